"""Auto-fix controller.

Drives repeated reconcile -> fix cycles for one spec, bounded by a
persisted attempt counter:

    IDLE -> ATTEMPTING -> SUCCEEDED   (clean pass; counter reset)
                       -> EXHAUSTED   (counter would exceed max_attempts)

Every run reconciles first, so a spec that became clean (code edited by
hand) succeeds even with the counter at its bound. Otherwise EXHAUSTED
holds until an operator clears the counter. The controller never edits the
spec itself.
"""

import os
import sys

IDLE = 'IDLE'
ATTEMPTING = 'ATTEMPTING'
SUCCEEDED = 'SUCCEEDED'
EXHAUSTED = 'EXHAUSTED'

STATUS_PASS = 'PASS'
STATUS_FAIL = 'FAIL'
STATUS_EXHAUSTED = 'EXHAUSTED'

EXIT_CODES = {
    STATUS_PASS: 0,
    STATUS_FAIL: 1,
    STATUS_EXHAUSTED: 2,
}

DEFAULT_MAX_ATTEMPTS = 5

MANUAL_INTERVENTION = 'Manual intervention required'


# ===================================================================
# Attempt counter persistence
# ===================================================================

def load_attempts(path):
    """Read the attempt counter. Absent file means zero."""
    if not os.path.isfile(path):
        return 0
    try:
        with open(path, 'r') as f:
            text = f.read().strip()
    except (IOError, OSError) as e:
        print(f'Warning: could not read attempt counter {path}: {e}',
              file=sys.stderr)
        return 0
    try:
        value = int(text or '0')
    except ValueError:
        print(f'Warning: attempt counter {path} is not an integer; '
              'treating as 0', file=sys.stderr)
        return 0
    return max(value, 0)


def save_attempts(path, attempts):
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, 'w') as f:
        f.write(f'{attempts}\n')


def clear_attempts(path):
    """Remove the attempt counter. Returns True if one existed."""
    if os.path.isfile(path):
        os.remove(path)
        return True
    return False


# ===================================================================
# Controller
# ===================================================================

def run_auto_fix(reconcile_once, attempts=0, max_attempts=DEFAULT_MAX_ATTEMPTS,
                 apply_fix=None, on_attempt=None):
    """Run reconcile -> fix cycles until clean or out of attempts.

    Args:
        reconcile_once: callable returning a reconciliation result dict with
            at least 'clean' (bool), 'spec_path' and 'files'; a result with
            a true 'refused' stops the run without spending an attempt
        attempts: attempts already spent (persisted by the caller)
        max_attempts: upper bound on attempts
        apply_fix: apply_fix(spec_path, files) -> bool, or None. Without a
            fix collaborator one invocation spends at most one attempt and
            stops with FAIL.
        on_attempt: called with the new count after every increment so the
            caller can persist it

    Returns:
        dict with 'status' (PASS|FAIL|EXHAUSTED), 'state', 'attempts',
        'result' (last reconciliation result), 'history' (state trace)
    """
    history = [IDLE, ATTEMPTING]
    while True:
        result = reconcile_once()

        if result.get('clean'):
            history.append(SUCCEEDED)
            return {'status': STATUS_PASS, 'state': SUCCEEDED, 'attempts': 0,
                    'result': result, 'history': history}

        if result.get('refused'):
            # Reconciliation declined to run; no attempt is spent
            return {'status': STATUS_FAIL, 'state': ATTEMPTING,
                    'attempts': attempts, 'result': result, 'history': history}

        if attempts + 1 > max_attempts:
            history.append(EXHAUSTED)
            return {'status': STATUS_EXHAUSTED, 'state': EXHAUSTED,
                    'attempts': attempts, 'result': result, 'history': history}

        attempts += 1
        if on_attempt is not None:
            on_attempt(attempts)
        print(f'Fix attempt {attempts}/{max_attempts} for '
              f'{result.get("spec_path", "spec")}')

        if apply_fix is None:
            return {'status': STATUS_FAIL, 'state': ATTEMPTING,
                    'attempts': attempts, 'result': result, 'history': history}

        if not apply_fix(result.get('spec_path'), result.get('files', [])):
            print(f'Warning: fix attempt {attempts} reported failure',
                  file=sys.stderr)
