#!/usr/bin/env python3
"""Unit tests for spec document parsing.

Outputs test results to tests/spec_parser/tests.json.
"""

import json
import os
import shutil
import sys
import tempfile
import unittest

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, SCRIPT_DIR)

from spec_parser import (
    STATUS_FAIL,
    STATUS_PASS,
    STATUS_UNCHECKED,
    SpecFormatError,
    SpecNotFoundError,
    find_checks_section,
    find_spec,
    list_spec_files,
    load_spec,
    parse_check_line,
    parse_checks,
    parse_meta,
    parse_spec,
    parse_title,
)

SAMPLE_SPEC = """# Feature: User Login

## Description
Authenticates users.

## Files
- src/auth.js
- `src/token.js`

## Checks
- [ ] validate user credentials
- [x] generate secure token for authentication
- [\U0001F7E5] log validation errors
  - [\U0001F7E9] nested item still counts

## Notes
- [ ] not a check, wrong section

<!-- meta:
{"files": ["src/auth.js"], "file_hashes": {"src/auth.js": "abc123"}}
-->
<!-- generated via tally v1.2.0 on 2026-01-02 -->
"""


class TestCheckLine(unittest.TestCase):
    def test_unchecked(self):
        item = parse_check_line('- [ ] validate user credentials')
        self.assertEqual(item['text'], 'validate user credentials')
        self.assertEqual(item['status'], STATUS_UNCHECKED)

    def test_legacy_done_marker_is_pass(self):
        self.assertEqual(parse_check_line('- [x] done')['status'], STATUS_PASS)
        self.assertEqual(parse_check_line('* [X] done')['status'], STATUS_PASS)

    def test_colored_glyphs(self):
        self.assertEqual(parse_check_line('- [\U0001F7E9] ok')['status'],
                         STATUS_PASS)
        self.assertEqual(parse_check_line('- [\U0001F7E5] bad')['status'],
                         STATUS_FAIL)

    def test_plain_list_item_is_not_a_check(self):
        self.assertIsNone(parse_check_line('- src/auth.js'))
        self.assertIsNone(parse_check_line('some prose'))

    def test_unknown_glyph_is_not_a_check(self):
        self.assertIsNone(parse_check_line('- [?] maybe'))

    def test_trailing_whitespace_and_cr_trimmed(self):
        item = parse_check_line('- [ ] write to specified file  \r')
        self.assertEqual(item['text'], 'write to specified file')


class TestChecksSection(unittest.TestCase):
    def test_section_bounds_stop_at_next_heading(self):
        lines = SAMPLE_SPEC.split('\n')
        start, end = find_checks_section(lines)
        self.assertEqual(lines[start], '## Checks')
        self.assertEqual(lines[end], '## Notes')

    def test_section_stops_at_meta_comment(self):
        lines = ['# T', '## Checks', '- [ ] a', '<!-- meta:', '{}', '-->']
        self.assertEqual(find_checks_section(lines), (1, 3))

    def test_section_stops_at_generated_comment(self):
        lines = ['# T', '## Checks', '- [ ] a',
                 '<!-- generated via tally v1.0 on today -->']
        self.assertEqual(find_checks_section(lines), (1, 3))

    def test_plain_comment_stays_inside_section(self):
        content = '# T\n## Checks\n- [x] a\n<!-- needs review -->\n- [x] b\n'
        self.assertEqual([c['text'] for c in parse_checks(content)],
                         ['a', 'b'])

    def test_section_runs_to_end_of_document(self):
        lines = ['# T', '## Checks', '- [ ] a', '- [ ] b']
        self.assertEqual(find_checks_section(lines), (1, 4))

    def test_subheadings_stay_inside_section(self):
        lines = ['# T', '## Checks', '### API', '- [ ] a', '## Next']
        self.assertEqual(find_checks_section(lines), (1, 4))

    def test_checks_in_document_order(self):
        checks = parse_checks(SAMPLE_SPEC)
        self.assertEqual([c['text'] for c in checks], [
            'validate user credentials',
            'generate secure token for authentication',
            'log validation errors',
            'nested item still counts',
        ])

    def test_no_checks_heading_returns_none(self):
        self.assertIsNone(parse_checks('# Title\n\n- [ ] orphan\n'))


class TestMeta(unittest.TestCase):
    def test_absent(self):
        self.assertEqual(parse_meta('# T\n')['status'], 'ABSENT')

    def test_valid(self):
        meta = parse_meta(SAMPLE_SPEC)
        self.assertEqual(meta['status'], 'OK')
        self.assertEqual(meta['files'], ['src/auth.js'])
        self.assertEqual(meta['file_hashes'], {'src/auth.js': 'abc123'})

    def test_malformed_json_is_invalid(self):
        meta = parse_meta('<!-- meta: {"files": [ -->')
        self.assertEqual(meta['status'], 'INVALID')
        self.assertTrue(meta['errors'][0].startswith('malformed JSON'))
        self.assertEqual(meta['files'], [])

    def test_schema_violation_is_invalid(self):
        meta = parse_meta('<!-- meta: {"files": "src/auth.js"} -->')
        self.assertEqual(meta['status'], 'INVALID')
        self.assertIn('"files" must be a list of strings', meta['errors'])

    def test_bad_hash_map_is_invalid(self):
        meta = parse_meta('<!-- meta: {"file_hashes": {"a.js": 1}} -->')
        self.assertEqual(meta['status'], 'INVALID')

    def test_non_object_is_invalid(self):
        meta = parse_meta('<!-- meta: [1, 2] -->')
        self.assertEqual(meta['status'], 'INVALID')


class TestParseSpec(unittest.TestCase):
    def test_full_document(self):
        spec = parse_spec(SAMPLE_SPEC, 'specs/login.md')
        self.assertEqual(spec['title'], 'User Login')
        self.assertEqual(spec['description'], 'Authenticates users.')
        self.assertEqual(spec['files'], ['src/auth.js', 'src/token.js'])
        self.assertEqual(len(spec['checks']), 4)
        self.assertEqual(spec['generated'], {
            'tool': 'tally', 'version': '1.2.0', 'date': '2026-01-02'})

    def test_title_without_feature_prefix(self):
        self.assertEqual(parse_title('# Login\n'), 'Login')

    def test_missing_checks_raises_with_path(self):
        with self.assertRaises(SpecFormatError) as ctx:
            parse_spec('# Login\n\n## Files\n- a.js\n', 'specs/login.md')
        self.assertEqual(ctx.exception.path, 'specs/login.md')
        self.assertIn('Checks', str(ctx.exception))

    def test_missing_title_raises(self):
        with self.assertRaises(SpecFormatError):
            parse_spec('## Checks\n- [ ] a\n')

    def test_empty_checks_section_is_valid(self):
        spec = parse_spec('# Login\n## Checks\n')
        self.assertEqual(spec['checks'], [])


class TestSpecLookup(unittest.TestCase):
    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.specs_dir = os.path.join(self.root, 'specs')
        os.makedirs(os.path.join(self.specs_dir, 'auth'))
        for rel in ('login.md', 'auth/login-flow.md', 'signup.md'):
            with open(os.path.join(self.specs_dir, rel), 'w') as f:
                f.write('# X\n## Checks\n- [ ] a\n')

    def tearDown(self):
        shutil.rmtree(self.root)

    def test_lists_recursively_sorted(self):
        names = [os.path.relpath(p, self.specs_dir)
                 for p in list_spec_files(self.specs_dir)]
        self.assertEqual(names, [os.path.join('auth', 'login-flow.md'),
                                 'login.md', 'signup.md'])

    def test_exact_slug_wins(self):
        path, others = find_spec('login', self.specs_dir)
        self.assertEqual(os.path.basename(path), 'login.md')
        self.assertEqual(others, [])

    def test_substring_match_lists_others(self):
        path, others = find_spec('log', self.specs_dir)
        self.assertEqual(os.path.basename(path), 'login-flow.md')
        self.assertEqual([os.path.basename(p) for p in others], ['login.md'])

    def test_direct_path(self):
        target = os.path.join(self.specs_dir, 'signup.md')
        self.assertEqual(find_spec(target, self.specs_dir), (target, []))

    def test_not_found(self):
        with self.assertRaises(SpecNotFoundError):
            find_spec('payments', self.specs_dir)

    def test_load_missing_file(self):
        with self.assertRaises(SpecNotFoundError):
            load_spec(os.path.join(self.specs_dir, 'nope.md'))


if __name__ == '__main__':
    project_root = os.path.abspath(os.path.join(SCRIPT_DIR, '../../'))
    tests_out_dir = os.path.join(project_root, 'tests', 'spec_parser')
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
            'tool': 'spec_parser',
            'runner': 'unittest',
        }, f)
    print(f'\n{status_file}: {status}')

    sys.exit(0 if result.wasSuccessful() else 1)
