"""Spec snapshot store and integrity guard.

Records a SHA-256 fingerprint of every spec document and later reports
which specs changed, appeared, or disappeared since the snapshot was taken.
Comparison is byte-exact; file metadata (mtime) is never consulted.

Snapshot document:
    {"specs": {"<path>": "<hex sha-256>"},
     "lastUpdated": "<ISO8601>", "totalFiles": <int>}
"""

import hashlib
import json
import os
import tempfile
from datetime import datetime, timezone

from spec_parser import list_spec_files

INTEGRITY_MARKER = 'SPEC_INTEGRITY_VIOLATION'


def hash_file(path):
    """SHA-256 hex digest of a file's raw bytes."""
    with open(path, 'rb') as f:
        return hashlib.sha256(f.read()).hexdigest()


def _snapshot_key(path, project_root):
    """Snapshot keys are project-relative POSIX paths."""
    rel = os.path.relpath(path, project_root) if project_root else path
    return rel.replace(os.sep, '/')


def compute_hashes(specs_dir, project_root=None):
    """Hash every spec under specs_dir. Returns {key: hash}."""
    hashes = {}
    for path in list_spec_files(specs_dir):
        hashes[_snapshot_key(path, project_root)] = hash_file(path)
    return hashes


def _atomic_write(path, data):
    """Write JSON atomically: temp file in same dir, then rename."""
    parent = os.path.dirname(path) or '.'
    os.makedirs(parent, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2)
            f.write('\n')
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def load_snapshot(snapshot_path):
    """Load a snapshot document.

    Returns the dict, None when the file does not exist. Raises ValueError
    when the file exists but is not a valid snapshot.
    """
    if not os.path.isfile(snapshot_path):
        return None
    try:
        with open(snapshot_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f'{snapshot_path}: malformed snapshot ({e.msg})')
    if not isinstance(data, dict) or not isinstance(data.get('specs'), dict):
        raise ValueError(f'{snapshot_path}: snapshot has no "specs" map')
    return data


def create_snapshot(specs_dir, snapshot_path, project_root=None):
    """Fingerprint all specs and overwrite the snapshot document."""
    hashes = compute_hashes(specs_dir, project_root)
    snapshot = {
        'specs': hashes,
        'lastUpdated': datetime.now(timezone.utc).isoformat(),
        'totalFiles': len(hashes),
    }
    _atomic_write(snapshot_path, snapshot)
    return snapshot


def compare_hashes(recorded, current):
    """Compare two {path: hash} maps.

    Returns dict with sorted 'changed', 'added', 'deleted' path lists.
    """
    changed = sorted(p for p, h in current.items()
                     if p in recorded and recorded[p] != h)
    added = sorted(p for p in current if p not in recorded)
    deleted = sorted(p for p in recorded if p not in current)
    return {'changed': changed, 'added': added, 'deleted': deleted}


def verify_snapshot(specs_dir, snapshot_path, project_root=None):
    """Compare current specs against the stored snapshot.

    A missing snapshot is a first run: one is created and the result passes.
    A corrupt snapshot fails with the integrity marker.

    Returns dict with 'status' ('PASS'|'FAIL'), 'changed', 'added',
    'deleted', 'created', 'marker', 'detail'.
    """
    result = {
        'status': 'PASS',
        'changed': [],
        'added': [],
        'deleted': [],
        'created': False,
        'marker': None,
        'detail': '',
    }
    try:
        snapshot = load_snapshot(snapshot_path)
    except ValueError as e:
        result['status'] = 'FAIL'
        result['marker'] = INTEGRITY_MARKER
        result['detail'] = str(e)
        return result

    if snapshot is None:
        created = create_snapshot(specs_dir, snapshot_path, project_root)
        result['created'] = True
        result['detail'] = (
            f'No snapshot found; created one covering '
            f'{created["totalFiles"]} spec files.')
        return result

    diff = compare_hashes(snapshot['specs'],
                          compute_hashes(specs_dir, project_root))
    result.update(diff)

    if diff['changed'] or diff['added'] or diff['deleted']:
        result['status'] = 'FAIL'
        result['marker'] = INTEGRITY_MARKER
        result['detail'] = (
            f'{len(diff["changed"])} changed, {len(diff["added"])} added, '
            f'{len(diff["deleted"])} deleted since snapshot.')
    else:
        result['detail'] = 'All spec files match the snapshot.'
    return result


def diff_snapshot(specs_dir, snapshot_path, project_root=None):
    """Report only specs whose content changed since the snapshot.

    Returns dict with 'status', 'changed', 'created', 'detail'.
    """
    verified = verify_snapshot(specs_dir, snapshot_path, project_root)
    if verified['marker'] and not (verified['changed'] or verified['added']
                                   or verified['deleted']):
        # corrupt snapshot
        return {'status': 'FAIL', 'changed': [], 'created': False,
                'detail': verified['detail']}
    changed = verified['changed']
    return {
        'status': 'FAIL' if changed else 'PASS',
        'changed': changed,
        'created': verified['created'],
        'detail': (f'{len(changed)} spec files changed content.'
                   if changed else 'No spec files have changed content.'),
    }
