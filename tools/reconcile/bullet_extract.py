"""Action bullet extraction.

Produces comparable "verb + object" bullets from two sources:

  * spec side: the check items of a spec's Checks section;
  * implementation side: the source files the spec references, scanned by
    an ordered rule table of structural signals and behavioral keywords,
    with an LLM summarizer as fallback (or as primary strategy).

Implementation results are cached by SHA-256 of the extraction inputs, so
the cache invalidates itself when the source changes.
"""

import hashlib
import json
import os
import re
import sys

from summarizer import SummarizerError, build_source_text

DEFAULT_STOP_VERBS = ('return', 'print', 'log', 'console')

STRATEGY_STATIC = 'static'
STRATEGY_LLM = 'llm'

CODE_EXTENSIONS = frozenset({
    '.py', '.js', '.jsx', '.ts', '.tsx', '.mjs', '.cjs',
    '.rb', '.java', '.go', '.php', '.cs', '.sh',
})
JS_EXTENSIONS = frozenset({'.js', '.jsx', '.ts', '.tsx', '.mjs', '.cjs'})

# Directories never scanned by relevant-file discovery
SKIP_DIRS = frozenset({
    '.git', 'node_modules', '__pycache__', '.tally', '.venv', 'venv',
    'dist', 'build', '.tox', '.mypy_cache', '.pytest_cache',
})

_NOT_METHODS = frozenset({
    'if', 'for', 'while', 'switch', 'catch', 'function', 'return', 'with',
    'else', 'do', 'try', 'constructor',
})

RESPONSIBILITY = 'should handle its responsibilities correctly'

# Structural signal rules: (name, pattern, template, extensions or None).
# Templates are formatted with the pattern's named groups.
SIGNAL_RULES = [
    ('python_function',
     re.compile(r'^[ \t]*(?:async[ \t]+)?def[ \t]+(?P<name>[A-Za-z_]\w*)[ \t]*\(',
                re.MULTILINE),
     '{name} function ' + RESPONSIBILITY,
     frozenset({'.py'})),
    ('js_function',
     re.compile(r'\bfunction\s*\*?\s+(?P<name>[A-Za-z_$][\w$]*)\s*\('),
     '{name} function ' + RESPONSIBILITY,
     JS_EXTENSIONS),
    ('js_method',
     re.compile(r'^[ \t]*(?:async[ \t]+)?(?P<name>[A-Za-z_$][\w$]*)[ \t]*'
                r'\([^)\n]*\)[ \t]*\{', re.MULTILINE),
     '{name} method ' + RESPONSIBILITY,
     JS_EXTENSIONS),
    ('python_route',
     re.compile(r'@\w+(?:\.\w+)*\.(?:route|get|post|put|patch|delete)\(\s*'
                r'[\'"](?P<name>/[^\'"]*)[\'"]'),
     '{name} route ' + RESPONSIBILITY,
     frozenset({'.py'})),
    ('js_route',
     re.compile(r'\b(?:app|router|server)\.(?:get|post|put|patch|delete|all)'
                r'\(\s*[\'"`](?P<name>/[^\'"`]*)[\'"`]'),
     '{name} route ' + RESPONSIBILITY,
     JS_EXTENSIONS),
    ('cli_flag',
     re.compile(r'(?:add_argument|\.option)\(\s*(?:[\'"]-\w[\'"],\s*)?'
                r'[\'"](?:-\w,\s*)?(?P<name>--[\w-]+)'),
     '{name} flag ' + RESPONSIBILITY,
     None),
]

# Behavioral keyword rules: (name, keyword groups, bullet). Every group must
# have at least one keyword present in the file.
KEYWORD_RULES = [
    ('command_line_input',
     [('process.stdin', 'readline', 'sys.argv', 'argparse')],
     'handle command line arguments'),
    ('console_output',
     [('console.log', 'print(')],
     'display output on console'),
    ('file_write',
     [('writeFile', '.write(', 'write_text(', 'write_bytes(')],
     'write to specified file'),
    ('schema_validation',
     [('validate', 'schema')],
     'validate data against schema'),
    ('error_logging',
     [('error',), ('log',)],
     'log validation errors'),
    ('token_generation',
     [('crypto', 'token', 'auth', 'secrets'),
      ('random', 'generate', 'token_hex', 'token_urlsafe')],
     'generate secure token for authentication'),
]


def normalize_bullet(text):
    """Normalize a bullet for comparison.

    Lowercase, collapse whitespace runs, strip trailing punctuation, trim.
    Idempotent.
    """
    text = re.sub(r'\s+', ' ', text.lower()).strip()
    return re.sub(r'[\s.,;:!?]+$', '', text)


def _dedupe(bullets):
    seen = set()
    result = []
    for bullet in bullets:
        key = normalize_bullet(bullet)
        if key and key not in seen:
            seen.add(key)
            result.append(bullet)
    return result


# ===================================================================
# Spec side
# ===================================================================

def extract_spec_bullets(checks):
    """Extract bullets from parsed check items.

    Returns list of (check_index, text) for every non-empty item, in
    document order.
    """
    bullets = []
    for i, check in enumerate(checks):
        text = check['text'].strip()
        if text:
            bullets.append((i, text))
    return bullets


# ===================================================================
# Implementation side: static rules
# ===================================================================

def extract_signal_bullets(path, content, rules=None):
    """Apply the signal rule table to one file."""
    ext = os.path.splitext(path)[1].lower()
    bullets = []
    for _name, pattern, template, extensions in (rules or SIGNAL_RULES):
        if extensions is not None and ext not in extensions:
            continue
        for match in pattern.finditer(content):
            groups = match.groupdict()
            name = groups.get('name', '')
            if name in _NOT_METHODS or name.startswith('__'):
                continue
            bullets.append(template.format(**groups))
    return bullets


def extract_keyword_bullets(content, rules=None):
    """Apply the behavioral keyword rule table to one file."""
    bullets = []
    for _name, groups, bullet in (rules or KEYWORD_RULES):
        if all(any(kw in content for kw in group) for group in groups):
            bullets.append(bullet)
    return bullets


def extract_static_bullets(file_contents):
    """Run both static rule tables over {path: content}. Deduplicated."""
    bullets = []
    for path, content in file_contents.items():
        bullets.extend(extract_signal_bullets(path, content))
        bullets.extend(extract_keyword_bullets(content))
    return _dedupe(bullets)


# ===================================================================
# Implementation side: summarizer reply parsing
# ===================================================================

def parse_summary_bullets(reply, stop_verbs=DEFAULT_STOP_VERBS):
    """Parse a summarizer reply into bullets.

    Keeps only list lines ("- ", "* ", "1. "); reasoning blocks, preamble
    and closing lines are discarded, as are bullets whose first word is a
    stop verb.
    """
    reply = re.sub(r'<think(?:ing)?>.*?</think(?:ing)?>', '', reply,
                   flags=re.DOTALL | re.IGNORECASE)
    stops = {v.lower() for v in stop_verbs}
    bullets = []
    for line in reply.split('\n'):
        match = re.match(r'^\s*(?:[-*•]|\d+[.)])\s+(.+)$', line)
        if not match:
            continue
        text = match.group(1).strip().strip('"\'`').strip()
        if not text:
            continue
        first = re.split(r'\W+', text.lower(), maxsplit=1)[0]
        if first in stops:
            continue
        bullets.append(text)
    return _dedupe(bullets)


# ===================================================================
# File selection and reading
# ===================================================================

def select_relevant_files(title, project_root, limit=10, exclude_dirs=()):
    """Pick the files most relevant to a spec title by keyword overlap.

    Each title term of 3+ characters scores +5 when found in the file name
    and +2 when found elsewhere in the path. Returns up to `limit`
    project-relative paths, best first.
    """
    terms = [t for t in re.split(r'[^a-z0-9]+', title.lower()) if len(t) >= 3]
    if not terms:
        return []

    excluded = {os.path.normpath(os.path.join(project_root, d))
                for d in exclude_dirs}
    scored = []
    for root, dirs, files in os.walk(project_root):
        dirs[:] = sorted(
            d for d in dirs
            if d not in SKIP_DIRS
            and os.path.normpath(os.path.join(root, d)) not in excluded)
        for fname in sorted(files):
            if os.path.splitext(fname)[1].lower() not in CODE_EXTENSIONS:
                continue
            rel = os.path.relpath(os.path.join(root, fname), project_root)
            rel = rel.replace(os.sep, '/')
            base = fname.lower()
            score = 0
            for term in terms:
                if term in base:
                    score += 5
                elif term in rel.lower():
                    score += 2
            if score > 0:
                scored.append((score, rel))

    scored.sort(key=lambda item: (-item[0], item[1]))
    return [rel for _score, rel in scored[:limit]]


def read_source_files(paths, project_root):
    """Read referenced source files.

    Unreadable files are skipped. Returns ({path: content}, warnings).
    """
    contents = {}
    warnings = []
    for rel in paths:
        full = rel if os.path.isabs(rel) else os.path.join(project_root, rel)
        try:
            with open(full, 'r', encoding='utf-8') as f:
                contents[rel] = f.read()
        except (IOError, OSError, UnicodeDecodeError) as e:
            warnings.append(f'Could not read file {rel}: {e}')
    return contents, warnings


# ===================================================================
# Cache
# ===================================================================

def cache_key(file_contents, strategy, llm_available,
              stop_verbs=DEFAULT_STOP_VERBS):
    """SHA-256 of the extraction inputs, stop verbs included."""
    h = hashlib.sha256()
    h.update(f'{strategy}\n{int(bool(llm_available))}\n'.encode('utf-8'))
    verbs = ','.join(sorted({v.lower() for v in stop_verbs}))
    h.update(f'stop:{verbs}\n'.encode('utf-8'))
    for path in sorted(file_contents):
        h.update(path.encode('utf-8'))
        h.update(b'\n---\n')
        h.update(file_contents[path].encode('utf-8'))
        h.update(b'\n===\n')
    return h.hexdigest()


def _read_cache(cache_dir, key):
    """Read cached bullets. Returns list or None."""
    path = os.path.join(cache_dir, f'{key}.json')
    if os.path.isfile(path):
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError, OSError):
            return None
        bullets = data.get('bullets') if isinstance(data, dict) else None
        if isinstance(bullets, list):
            return bullets
    return None


def _write_cache(cache_dir, key, bullets, source):
    """Write bullets to cache."""
    os.makedirs(cache_dir, exist_ok=True)
    path = os.path.join(cache_dir, f'{key}.json')
    with open(path, 'w') as f:
        json.dump({'source': source, 'bullets': bullets}, f, indent=2)


# ===================================================================
# Entry point
# ===================================================================

def extract_implementation_bullets(file_contents, strategy=STRATEGY_STATIC,
                                   summarize=None,
                                   stop_verbs=DEFAULT_STOP_VERBS,
                                   cache_dir=None, force=False):
    """Extract implementation bullets from {path: content}.

    Args:
        file_contents: mapping of file path to source text
        strategy: 'static' (rules first, summarizer only when rules find
            nothing) or 'llm' (summarizer first, rules as fallback)
        summarize: summarize_to_bullets(text) -> str, or None to disable
        stop_verbs: first words that disqualify a summarizer bullet
        cache_dir: bullet cache directory, or None to disable caching
        force: ignore any cached result

    Returns:
        dict with 'bullets', 'source' ('static'|'llm'|'cache'|'none'),
        'errors', 'cache_key'
    """
    key = cache_key(file_contents, strategy, summarize is not None, stop_verbs)
    result = {'bullets': [], 'source': 'none', 'errors': [], 'cache_key': key}

    if not file_contents:
        return result

    if cache_dir and not force:
        cached = _read_cache(cache_dir, key)
        if cached is not None:
            result['bullets'] = cached
            result['source'] = 'cache'
            return result

    static = extract_static_bullets(file_contents)
    if static:
        result['bullets'] = static
        result['source'] = 'static'

    if summarize is not None and (strategy == STRATEGY_LLM or not static):
        try:
            reply = summarize(build_source_text(file_contents))
            llm_bullets = parse_summary_bullets(reply, stop_verbs)
        except SummarizerError as e:
            result['errors'].append(str(e))
            print(f'Warning: summarizer failed; LLM bullets omitted ({e})',
                  file=sys.stderr)
        else:
            if llm_bullets:
                result['bullets'] = llm_bullets
                result['source'] = 'llm'

    if cache_dir and not result['errors'] and result['bullets']:
        _write_cache(cache_dir, key, result['bullets'], result['source'])

    return result
