#!/usr/bin/env python3
"""Tally -- spec/implementation reconciliation CLI.

Audits a checklist spec against the source files it references, reports
drift in both directions, records per-item status in the spec, and drives
bounded auto-fix cycles.

Usage:
    tally audit login                     # one reconciliation pass
    tally audit login --auto-fix          # append code-only bullets to spec
    tally fix login                       # reconcile -> fix loop
    tally snapshot create|verify|diff     # spec integrity guard
    tally reset login                     # mark every check unchecked
    tally reset-attempts                  # clear the auto-fix counter
"""

import argparse
import json
import os
import shlex
import subprocess
import sys

# ---------------------------------------------------------------------------
# Path setup -- resolve project root
# ---------------------------------------------------------------------------
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))


def detect_project_root():
    """Locate the project root.

    1. TALLY_PROJECT_ROOT env var (authoritative when it names a directory)
    2. Nearest ancestor of the working directory holding a .tally/ dir
    3. Climbing from the tool directory (submodule, then standalone)
    4. The working directory
    """
    env_root = os.environ.get('TALLY_PROJECT_ROOT', '')
    if env_root and os.path.isdir(env_root):
        return os.path.abspath(env_root)

    current = os.getcwd()
    while True:
        if os.path.isdir(os.path.join(current, '.tally')):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent

    for depth in ('../../../', '../../'):
        candidate = os.path.abspath(os.path.join(SCRIPT_DIR, depth))
        if os.path.isdir(os.path.join(candidate, '.tally')):
            return candidate
    return os.getcwd()


DEFAULT_CONFIG = {
    'specs_dir': 'specs',
    'snapshot_path': '.tally/spec-snapshot.json',
    'cache_dir': '.tally/cache',
    'fix_attempts_path': '.tally/cache/fix_attempts',
    'auto_fix': {'max_attempts': 5},
    'strict_integrity': False,
    'llm_enabled': False,
    'llm_model': 'claude-sonnet-4-20250514',
    'extraction_strategy': 'static',
    'relevant_files_limit': 10,
    'stop_verbs': ['return', 'print', 'log', 'console'],
    'subject_synonyms': {},
    'fix_command': None,
    'fix_timeout': 600,
}


def load_config(project_root):
    """Load .tally/config.json over the defaults.

    A missing file yields the defaults; an unparseable one yields the
    defaults plus a warning.
    """
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    cfg_path = os.path.join(project_root, '.tally', 'config.json')
    if not os.path.exists(cfg_path):
        return config
    try:
        with open(cfg_path, 'r') as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError, OSError):
        print('Warning: Failed to parse .tally/config.json; using defaults',
              file=sys.stderr)
        return config
    if not isinstance(data, dict):
        print('Warning: .tally/config.json is not a JSON object; using defaults',
              file=sys.stderr)
        return config

    for key, value in data.items():
        if key == 'auto_fix' and isinstance(value, dict):
            config['auto_fix'].update(value)
        else:
            config[key] = value
    return config


PROJECT_ROOT = detect_project_root()
CONFIG = load_config(PROJECT_ROOT)

# ---------------------------------------------------------------------------
# Import sibling modules
# ---------------------------------------------------------------------------
sys.path.insert(0, SCRIPT_DIR)
from spec_parser import (  # noqa: E402
    SpecFormatError,
    SpecNotFoundError,
    find_spec,
    load_spec,
)
from spec_snapshot import (  # noqa: E402
    INTEGRITY_MARKER,
    create_snapshot,
    diff_snapshot,
    hash_file,
    verify_snapshot,
)
from bullet_extract import (  # noqa: E402
    extract_implementation_bullets,
    extract_spec_bullets,
    read_source_files,
    select_relevant_files,
)
from bullet_match import is_clean, match_bullets, merge_synonyms  # noqa: E402
from spec_mutator import (  # noqa: E402
    append_checks,
    reset_checks,
    update_check_statuses,
)
from auto_fix import (  # noqa: E402
    EXIT_CODES,
    MANUAL_INTERVENTION,
    STATUS_EXHAUSTED,
    STATUS_PASS,
    clear_attempts,
    load_attempts,
    run_auto_fix,
    save_attempts,
)
from summarizer import SummarizerError, make_summarizer  # noqa: E402

MODE_REPORT = 'report'
MODE_BATCH = 'batch'
MODE_INTERACTIVE = 'interactive'


def project_path(project_root, path):
    """Resolve a config path against the project root."""
    if os.path.isabs(path):
        return path
    return os.path.join(project_root, path)


def _display_path(path, project_root):
    try:
        return os.path.relpath(path, project_root)
    except ValueError:
        return path


# ===================================================================
# Reconciliation pass
# ===================================================================

def select_files(spec, project_root, config, explicit=None):
    """Choose the implementation files for a spec.

    Precedence: explicit list, meta block, Files section, relevance
    heuristic. Returns (files, source, warnings).
    """
    warnings = []
    if explicit:
        return list(explicit), 'explicit', warnings

    meta = spec['meta']
    if meta['status'] == 'OK' and meta['files']:
        return list(meta['files']), 'meta', warnings
    if meta['status'] == 'INVALID':
        warnings.append(
            f'Invalid meta block in {spec["path"]}: '
            f'{"; ".join(meta["errors"])}; falling back to file discovery')

    if spec['files']:
        return list(spec['files']), 'files-section', warnings

    files = select_relevant_files(
        spec['title'], project_root,
        limit=config.get('relevant_files_limit', 10),
        exclude_dirs=(config.get('specs_dir', 'specs'), '.tally'))
    return files, 'relevant', warnings


def check_file_drift(file_hashes, project_root):
    """Compare referenced source files against fingerprints in the meta block.

    Returns dict with 'changed' and 'missing' path lists.
    """
    drift = {'changed': [], 'missing': []}
    for rel, expected in sorted(file_hashes.items()):
        full = project_path(project_root, rel)
        if not os.path.isfile(full):
            drift['missing'].append(rel)
            continue
        try:
            actual = hash_file(full)
        except (IOError, OSError):
            drift['missing'].append(rel)
            continue
        if actual != expected.lower():
            drift['changed'].append(rel)
    return drift


def reconcile_spec(spec_path, project_root, config, files=None,
                   mode=MODE_REPORT, ask=None, force=False, strict=None,
                   summarize=None, record_statuses=True):
    """Run one reconciliation pass over a spec.

    Returns a result dict. 'clean' is True when neither side has unmatched
    bullets; 'status' is PASS, WARN or FAIL. Raises SpecNotFoundError or
    SpecFormatError when the spec cannot be used.
    """
    if strict is None:
        strict = bool(config.get('strict_integrity'))
    specs_dir = project_path(project_root, config['specs_dir'])
    snapshot_path = project_path(project_root, config['snapshot_path'])

    result = {
        'spec_path': spec_path,
        'title': '',
        'status': 'FAIL',
        'clean': False,
        'refused': False,
        'files': [],
        'file_source': None,
        'extraction_source': 'none',
        'matches': [],
        'missing_in_code': [],
        'missing_in_spec': [],
        'appended': [],
        'integrity': None,
        'meta_status': None,
        'drift': {'changed': [], 'missing': []},
        'warnings': [],
        'errors': [],
    }

    # Integrity guard
    guard_ok = False
    if strict or os.path.isfile(snapshot_path):
        integrity = verify_snapshot(specs_dir, snapshot_path, project_root)
        result['integrity'] = integrity
        if integrity['status'] == 'FAIL':
            message = f'{INTEGRITY_MARKER}: {integrity["detail"]}'
            if strict:
                result['refused'] = True
                result['errors'].append(message)
                return result
            result['warnings'].append(message)
        else:
            guard_ok = True

    spec = load_spec(spec_path)
    result['title'] = spec['title']
    result['meta_status'] = spec['meta']['status']

    spec_items = extract_spec_bullets(spec['checks'])
    spec_bullets = [text for _index, text in spec_items]

    selected, source, warnings = select_files(spec, project_root, config, files)
    result['files'] = selected
    result['file_source'] = source
    result['warnings'].extend(warnings)

    contents, read_warnings = read_source_files(selected, project_root)
    result['warnings'].extend(read_warnings)

    extraction = extract_implementation_bullets(
        contents,
        strategy=config.get('extraction_strategy', 'static'),
        summarize=summarize,
        stop_verbs=config.get('stop_verbs') or (),
        cache_dir=project_path(project_root, config['cache_dir']),
        force=force)
    result['extraction_source'] = extraction['source']
    result['errors'].extend(extraction['errors'])

    match = match_bullets(spec_bullets, extraction['bullets'],
                          merge_synonyms(config.get('subject_synonyms')))
    result['matches'] = match['matches']
    result['missing_in_code'] = match['missing_in_code']
    result['missing_in_spec'] = match['missing_in_spec']
    result['clean'] = is_clean(match)

    wrote = False
    if record_statuses:
        if result['clean']:
            wrote = reset_checks(spec_path)
        else:
            statuses = {
                check_index: 'pass' if match['spec_matched'][i] else 'fail'
                for i, (check_index, _text) in enumerate(spec_items)
            }
            wrote = update_check_statuses(spec_path, statuses)

    if match['missing_in_spec'] and mode in (MODE_BATCH, MODE_INTERACTIVE):
        result['appended'] = append_checks(
            match['missing_in_spec'], spec_path,
            interactive=(mode == MODE_INTERACTIVE), ask=ask)
        wrote = wrote or bool(result['appended'])

    if wrote and guard_ok:
        create_snapshot(specs_dir, snapshot_path, project_root)

    if spec['meta']['status'] == 'OK' and spec['meta']['file_hashes']:
        result['drift'] = check_file_drift(spec['meta']['file_hashes'],
                                           project_root)

    for warning in result['warnings']:
        print(f'Warning: {warning}', file=sys.stderr)

    unresolved = [b for b in result['missing_in_spec']
                  if b not in result['appended']]
    if result['clean']:
        drifted = result['drift']['changed'] or result['drift']['missing']
        result['status'] = 'WARN' if drifted else 'PASS'
    elif not result['missing_in_code'] and not unresolved:
        result['status'] = 'WARN'
    else:
        result['status'] = 'FAIL'
    return result


# ===================================================================
# Collaborators
# ===================================================================

def build_summarizer(config):
    """Create the LLM summarizer when enabled. Returns callable or None."""
    if not config.get('llm_enabled'):
        return None
    try:
        return make_summarizer(model=config.get('llm_model'))
    except SummarizerError as e:
        print(f'Warning: {e}; continuing with static extraction',
              file=sys.stderr)
        return None


def make_fix_command(template, project_root, timeout=600):
    """Build an apply_fix(spec_path, files) -> bool collaborator.

    The template is a shell command; {spec} and {files} are substituted
    with shell-quoted values.
    """
    def apply_fix(spec_path, files):
        try:
            command = template.format(
                spec=shlex.quote(spec_path),
                files=' '.join(shlex.quote(f) for f in files))
        except (KeyError, IndexError, ValueError) as e:
            print(f'Error: invalid fix_command template: {e}', file=sys.stderr)
            return False

        try:
            proc = subprocess.run(
                command, shell=True, capture_output=True, text=True,
                cwd=project_root, timeout=timeout
            )
        except subprocess.TimeoutExpired:
            print(f'Error: fix command timed out after {timeout} seconds',
                  file=sys.stderr)
            return False
        except OSError as e:
            print(f'Error: fix command failed to start: {e}', file=sys.stderr)
            return False

        if proc.returncode != 0:
            err = (proc.stderr.strip() or proc.stdout.strip()
                   or f'Exit code {proc.returncode}')
            print(f'Error: fix command failed: {err}', file=sys.stderr)
            return False
        return True

    return apply_fix


# ===================================================================
# Reporting
# ===================================================================

def print_audit_report(result, project_root):
    spec_display = _display_path(result['spec_path'], project_root)
    print(f'Auditing {result["title"] or spec_display} ({spec_display})')

    if result['refused']:
        for error in result['errors']:
            print(f'❌ {error}')
        print('Strict integrity mode: refusing to reconcile. '
              'Review the spec changes, then run `tally snapshot create`.')
        return

    if result['files']:
        print(f'Files ({result["file_source"]}): {", ".join(result["files"])}')
    else:
        print('Files: none found')

    print(f'✅ {len(result["matches"])} matched')
    if result['missing_in_code']:
        print(f'❌ Missing in code ({len(result["missing_in_code"])}):')
        for bullet in result['missing_in_code']:
            print(f'   - {bullet}')
    if result['missing_in_spec']:
        print(f'⚠️  Missing in spec ({len(result["missing_in_spec"])}):')
        for bullet in result['missing_in_spec']:
            mark = ' (added)' if bullet in result['appended'] else ''
            print(f'   - {bullet}{mark}')

    drift = result['drift']
    for path in drift['changed']:
        print(f'⚠️  Referenced file changed since spec was written: {path}')
    for path in drift['missing']:
        print(f'⚠️  Referenced file missing: {path}')

    if result['clean']:
        print('✅ Spec and implementation agree')


def _resolve_spec(name, project_root, config):
    specs_dir = project_path(project_root, config['specs_dir'])
    path, others = find_spec(name, specs_dir)
    if others:
        also = ', '.join(_display_path(p, project_root) for p in others)
        print(f'Note: several specs match "{name}"; using '
              f'{_display_path(path, project_root)} (also: {also})',
              file=sys.stderr)
    return path


# ===================================================================
# Commands
# ===================================================================

def _audit_mode(args):
    if args.auto_fix:
        return MODE_BATCH
    if args.non_interactive or args.json:
        return MODE_REPORT
    return MODE_INTERACTIVE if sys.stdin.isatty() else MODE_REPORT


def cmd_audit(args):
    try:
        spec_path = _resolve_spec(args.spec, PROJECT_ROOT, CONFIG)
        result = reconcile_spec(
            spec_path, PROJECT_ROOT, CONFIG,
            files=args.files,
            mode=_audit_mode(args),
            force=args.force,
            strict=True if args.strict else None,
            summarize=build_summarizer(CONFIG))
    except (SpecNotFoundError, SpecFormatError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result, indent=2, ensure_ascii=False))
    else:
        print_audit_report(result, PROJECT_ROOT)

    if result['status'] != 'FAIL' or args.warn_only:
        return 0
    return 1


def cmd_fix(args):
    attempts_path = project_path(PROJECT_ROOT, CONFIG['fix_attempts_path'])
    max_attempts = int(CONFIG['auto_fix'].get('max_attempts', 5))
    try:
        spec_path = _resolve_spec(args.spec, PROJECT_ROOT, CONFIG)
    except SpecNotFoundError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    summarize = build_summarizer(CONFIG)
    apply_fix = None
    if CONFIG.get('fix_command'):
        apply_fix = make_fix_command(CONFIG['fix_command'], PROJECT_ROOT,
                                     CONFIG.get('fix_timeout', 600))

    def reconcile_once():
        return reconcile_spec(spec_path, PROJECT_ROOT, CONFIG,
                              mode=MODE_REPORT, summarize=summarize)

    try:
        outcome = run_auto_fix(
            reconcile_once,
            attempts=load_attempts(attempts_path),
            max_attempts=max_attempts,
            apply_fix=apply_fix,
            on_attempt=lambda n: save_attempts(attempts_path, n))
    except (SpecNotFoundError, SpecFormatError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    if outcome['result'] is not None and outcome['result']['refused']:
        print_audit_report(outcome['result'], PROJECT_ROOT)
        return 1

    status = outcome['status']
    if status == STATUS_PASS:
        clear_attempts(attempts_path)
        print('✅ Spec and implementation agree')
    elif status == STATUS_EXHAUSTED:
        print(f'❌ {MANUAL_INTERVENTION}: {outcome["attempts"]}/{max_attempts} '
              'fix attempts used. Run `tally reset-attempts` once resolved.')
    else:
        result = outcome['result']
        if result is not None:
            print_audit_report(result, PROJECT_ROOT)
        print(f'❌ Differences remain after attempt '
              f'{outcome["attempts"]}/{max_attempts}')
    return EXIT_CODES[status]


def cmd_snapshot(args):
    specs_dir = project_path(PROJECT_ROOT, CONFIG['specs_dir'])
    snapshot_path = project_path(PROJECT_ROOT, CONFIG['snapshot_path'])
    display = _display_path(snapshot_path, PROJECT_ROOT)

    if args.action == 'create':
        snapshot = create_snapshot(specs_dir, snapshot_path, PROJECT_ROOT)
        print(f'✅ Snapshot created: {snapshot["totalFiles"]} spec files '
              f'-> {display}')
        return 0

    if args.action == 'verify':
        result = verify_snapshot(specs_dir, snapshot_path, PROJECT_ROOT)
        if args.json:
            print(json.dumps(result, indent=2))
        else:
            for label, key in (('modified', 'changed'), ('added', 'added'),
                               ('deleted', 'deleted')):
                for path in result[key]:
                    print(f'  {label}: {path}')
            mark = '✅' if result['status'] == 'PASS' else '❌'
            print(f'{mark} {result["detail"]}')
        if result['status'] == 'FAIL':
            print(INTEGRITY_MARKER, file=sys.stderr)
            return 1
        return 0

    result = diff_snapshot(specs_dir, snapshot_path, PROJECT_ROOT)
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        for path in result['changed']:
            print(f'  modified: {path}')
        print(result['detail'])
    return 0 if result['status'] == 'PASS' else 1


def cmd_reset(args):
    try:
        spec_path = _resolve_spec(args.spec, PROJECT_ROOT, CONFIG)
        changed = reset_checks(spec_path)
    except (SpecNotFoundError, SpecFormatError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1

    snapshot_path = project_path(PROJECT_ROOT, CONFIG['snapshot_path'])
    if changed and os.path.isfile(snapshot_path):
        create_snapshot(project_path(PROJECT_ROOT, CONFIG['specs_dir']),
                        snapshot_path, PROJECT_ROOT)
    display = _display_path(spec_path, PROJECT_ROOT)
    if changed:
        print(f'Reset all checks in {display}')
    else:
        print(f'All checks in {display} already unchecked')
    return 0


def cmd_reset_attempts(args):
    attempts_path = project_path(PROJECT_ROOT, CONFIG['fix_attempts_path'])
    if clear_attempts(attempts_path):
        print('Fix attempt counter cleared.')
    else:
        print('No fix attempts recorded.')
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog='tally',
        description='Reconcile checklist specs with their implementation.'
    )
    subparsers = parser.add_subparsers(dest='command', help='Sub-command')

    # audit
    p_audit = subparsers.add_parser(
        'audit', help='Compare a spec with its implementation')
    p_audit.add_argument('spec', help='Spec name or path')
    p_audit.add_argument(
        '--files', nargs='+', default=None,
        help='Implementation files (overrides the spec)')
    p_audit.add_argument(
        '--non-interactive', action='store_true',
        help='Report differences without prompting')
    p_audit.add_argument(
        '--auto-fix', action='store_true',
        help='Append every code-only bullet to the spec')
    p_audit.add_argument(
        '--json', action='store_true', help='Print the result as JSON')
    p_audit.add_argument(
        '--force', action='store_true', help='Ignore cached extraction results')
    p_audit.add_argument(
        '--warn-only', action='store_true',
        help='Exit 0 even when differences are found')
    p_audit.add_argument(
        '--strict', action='store_true',
        help='Refuse to run when the spec snapshot does not verify')

    # fix
    p_fix = subparsers.add_parser(
        'fix', help='Run bounded reconcile -> fix cycles')
    p_fix.add_argument('spec', help='Spec name or path')

    # snapshot
    p_snapshot = subparsers.add_parser(
        'snapshot', help='Spec integrity snapshot')
    p_snapshot.add_argument('action', choices=['create', 'verify', 'diff'])
    p_snapshot.add_argument(
        '--json', action='store_true', help='Print the result as JSON')

    # reset
    p_reset = subparsers.add_parser(
        'reset', help='Mark every check of a spec unchecked')
    p_reset.add_argument('spec', help='Spec name or path')

    # reset-attempts
    subparsers.add_parser(
        'reset-attempts', help='Clear the auto-fix attempt counter')

    args = parser.parse_args(argv)

    if args.command == 'audit':
        sys.exit(cmd_audit(args))
    elif args.command == 'fix':
        sys.exit(cmd_fix(args))
    elif args.command == 'snapshot':
        sys.exit(cmd_snapshot(args))
    elif args.command == 'reset':
        sys.exit(cmd_reset(args))
    elif args.command == 'reset-attempts':
        sys.exit(cmd_reset_attempts(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
