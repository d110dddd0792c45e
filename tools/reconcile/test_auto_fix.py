#!/usr/bin/env python3
"""Unit tests for the auto-fix controller.

Outputs test results to tests/auto_fix/tests.json.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest
from unittest.mock import MagicMock

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, SCRIPT_DIR)

from auto_fix import (
    ATTEMPTING,
    EXHAUSTED,
    EXIT_CODES,
    IDLE,
    STATUS_EXHAUSTED,
    STATUS_FAIL,
    STATUS_PASS,
    SUCCEEDED,
    clear_attempts,
    load_attempts,
    run_auto_fix,
    save_attempts,
)

CLEAN = {'clean': True, 'spec_path': 'specs/login.md', 'files': ['a.js']}
DIRTY = {'clean': False, 'spec_path': 'specs/login.md', 'files': ['a.js']}


class TestAttemptCounter(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.path = os.path.join(self.root, 'cache', 'fix_attempts')

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_absent_is_zero(self):
        self.assertEqual(load_attempts(self.path), 0)

    def test_save_and_load(self):
        save_attempts(self.path, 3)
        with open(self.path) as f:
            self.assertEqual(f.read(), '3\n')
        self.assertEqual(load_attempts(self.path), 3)

    def test_garbage_is_zero(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, 'w') as f:
            f.write('three')
        self.assertEqual(load_attempts(self.path), 0)

    def test_clear(self):
        save_attempts(self.path, 2)
        self.assertTrue(clear_attempts(self.path))
        self.assertFalse(clear_attempts(self.path))
        self.assertEqual(load_attempts(self.path), 0)


class TestController(unittest.TestCase):
    def test_clean_first_pass_succeeds_and_resets(self):
        outcome = run_auto_fix(lambda: CLEAN, attempts=3)
        self.assertEqual(outcome['status'], STATUS_PASS)
        self.assertEqual(outcome['state'], SUCCEEDED)
        self.assertEqual(outcome['attempts'], 0)
        self.assertEqual(outcome['history'], [IDLE, ATTEMPTING, SUCCEEDED])

    def test_fix_then_clean(self):
        results = iter([DIRTY, DIRTY, CLEAN])
        apply_fix = MagicMock(return_value=True)
        outcome = run_auto_fix(lambda: next(results), apply_fix=apply_fix)
        self.assertEqual(outcome['status'], STATUS_PASS)
        self.assertEqual(apply_fix.call_count, 2)
        apply_fix.assert_called_with('specs/login.md', ['a.js'])

    def test_never_exceeds_max_attempts(self):
        increments = []
        apply_fix = MagicMock(return_value=False)
        outcome = run_auto_fix(lambda: DIRTY, attempts=0, max_attempts=5,
                               apply_fix=apply_fix,
                               on_attempt=increments.append)
        self.assertEqual(outcome['status'], STATUS_EXHAUSTED)
        self.assertEqual(outcome['state'], EXHAUSTED)
        self.assertEqual(increments, [1, 2, 3, 4, 5])
        self.assertEqual(apply_fix.call_count, 5)
        self.assertEqual(outcome['attempts'], 5)

    def test_resumes_from_persisted_count(self):
        increments = []
        outcome = run_auto_fix(lambda: DIRTY, attempts=3, max_attempts=5,
                               apply_fix=MagicMock(return_value=True),
                               on_attempt=increments.append)
        self.assertEqual(increments, [4, 5])
        self.assertEqual(outcome['status'], STATUS_EXHAUSTED)

    def test_counter_at_bound_succeeds_when_code_was_fixed(self):
        reconcile_once = MagicMock(return_value=CLEAN)
        outcome = run_auto_fix(reconcile_once, attempts=5, max_attempts=5)
        self.assertEqual(outcome['status'], STATUS_PASS)
        self.assertEqual(outcome['attempts'], 0)
        reconcile_once.assert_called_once_with()

    def test_counter_at_bound_stays_exhausted_while_dirty(self):
        increments = []
        apply_fix = MagicMock(return_value=True)
        outcome = run_auto_fix(lambda: DIRTY, attempts=5, max_attempts=5,
                               apply_fix=apply_fix,
                               on_attempt=increments.append)
        self.assertEqual(outcome['status'], STATUS_EXHAUSTED)
        self.assertEqual(outcome['history'], [IDLE, ATTEMPTING, EXHAUSTED])
        self.assertEqual(increments, [])
        apply_fix.assert_not_called()

    def test_without_fixer_one_increment_per_invocation(self):
        increments = []
        outcome = run_auto_fix(lambda: DIRTY, attempts=1,
                               on_attempt=increments.append)
        self.assertEqual(outcome['status'], STATUS_FAIL)
        self.assertEqual(increments, [2])
        self.assertEqual(EXIT_CODES[outcome['status']], 1)

    def test_refused_reconciliation_spends_nothing(self):
        increments = []
        refused = dict(DIRTY, refused=True)
        outcome = run_auto_fix(lambda: refused, on_attempt=increments.append)
        self.assertEqual(outcome['status'], STATUS_FAIL)
        self.assertEqual(increments, [])

    def test_exit_codes(self):
        self.assertEqual(EXIT_CODES, {'PASS': 0, 'FAIL': 1, 'EXHAUSTED': 2})


if __name__ == '__main__':
    project_root = os.path.abspath(os.path.join(SCRIPT_DIR, '../../'))
    tests_out_dir = os.path.join(project_root, 'tests', 'auto_fix')
    os.makedirs(tests_out_dir, exist_ok=True)
    status_file = os.path.join(tests_out_dir, 'tests.json')

    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    status = 'PASS' if result.wasSuccessful() else 'FAIL'
    with open(status_file, 'w') as f:
        json.dump({
            'status': status,
            'tests': result.testsRun,
            'failures': len(result.failures) + len(result.errors),
            'tool': 'auto_fix',
            'runner': 'unittest',
        }, f)
    print(f'\n{status_file}: {status}')

    sys.exit(0 if result.wasSuccessful() else 1)
