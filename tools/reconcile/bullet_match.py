"""Matching engine: classify spec and implementation bullets.

Three passes, each over still-unmatched bullets only:

  1. exact     -- normalized text equality
  2. subject   -- same function/method/component subject on both sides,
                  with a configurable synonym table bridging naming drift
  3. fallback  -- the token-generation phrasing cluster

Unmatched spec bullets are missing in code; unmatched implementation
bullets are missing in spec. Pairing is positional (first available), so
results are deterministic for fixed inputs.
"""

import re

from bullet_extract import normalize_bullet

VIA_EXACT = 'exact'
VIA_SUBJECT = 'subject'
VIA_FALLBACK = 'fallback'

COMPONENT_SUBJECTS = ('server', 'cli', 'api', 'database', 'cache', 'config')

TOKEN_SUBJECT = 'server-token'

# Default bridges. 'patterns' map a phrase to a subject on either side;
# 'aliases' additionally index an implementation subject under others.
DEFAULT_SYNONYMS = {
    'patterns': [
        {'pattern': r'(?:the\s+)?server\s+should\s+listen', 'subject': 'server-port'},
        {'pattern': r'(?:the\s+)?server\s+should\s+generate', 'subject': TOKEN_SUBJECT},
    ],
    'aliases': {
        'createserver': ['server-port'],
        'authenticate': [TOKEN_SUBJECT],
    },
}

_FUNCTION_RE = re.compile(r'(?:the\s+)?(\w+)\s+function\s+should')
_METHOD_RE = re.compile(r'(?:the\s+)?(\w+)\s+method\s+should')
_COMPONENT_RE = re.compile(
    r'(?:^|\s)(?:the\s+)?(' + '|'.join(COMPONENT_SUBJECTS) + r')\s+should\b')


def merge_synonyms(extra):
    """Merge a config-supplied synonym table over the defaults."""
    merged = {
        'patterns': list(DEFAULT_SYNONYMS['patterns']),
        'aliases': {k: list(v) for k, v in DEFAULT_SYNONYMS['aliases'].items()},
    }
    if not extra:
        return merged
    for entry in extra.get('patterns', []):
        if entry.get('pattern') and entry.get('subject'):
            merged['patterns'].append(
                {'pattern': entry['pattern'], 'subject': entry['subject']})
    for name, subjects in extra.get('aliases', {}).items():
        targets = merged['aliases'].setdefault(name.lower(), [])
        for subject in subjects:
            if subject not in targets:
                targets.append(subject)
    return merged


def extract_subject(text, synonyms=None):
    """Extract the primary subject of a bullet, or None.

    Order: function name, method name, synonym phrase, component keyword.
    """
    synonyms = synonyms or DEFAULT_SYNONYMS
    normalized = normalize_bullet(text)

    match = _FUNCTION_RE.search(normalized)
    if match:
        return match.group(1)
    match = _METHOD_RE.search(normalized)
    if match:
        return match.group(1)

    for entry in synonyms['patterns']:
        if re.search(entry['pattern'], normalized):
            return entry['subject']

    match = _COMPONENT_RE.search(normalized)
    if match:
        return match.group(1)
    return None


def subjects_for(text, synonyms=None, implementation=False):
    """All subjects a bullet is indexed under.

    Implementation bullets are also indexed under their aliases.
    """
    synonyms = synonyms or DEFAULT_SYNONYMS
    subject = extract_subject(text, synonyms)
    if subject is None:
        return []
    subjects = [subject]
    if implementation:
        for alias in synonyms['aliases'].get(subject, []):
            if alias not in subjects:
                subjects.append(alias)
    return subjects


def _mentions_token_generation(normalized):
    return 'generate' in normalized and (
        'token' in normalized or 'secure' in normalized)


def _offers_token_generation(normalized):
    return 'generate' in normalized and (
        'token' in normalized or 'secure' in normalized or 'auth' in normalized)


def match_bullets(spec_bullets, impl_bullets, synonyms=None):
    """Match spec bullets against implementation bullets.

    Returns dict:
        'matches': [{'spec', 'implementation', 'spec_index', 'impl_index',
                     'via'}] in the order they were found
        'missing_in_code': spec bullets with no counterpart
        'missing_in_spec': implementation bullets with no counterpart
        'spec_matched': [bool] per spec bullet
    """
    synonyms = synonyms or DEFAULT_SYNONYMS
    spec_norm = [normalize_bullet(b) for b in spec_bullets]
    impl_norm = [normalize_bullet(b) for b in impl_bullets]
    spec_used = [False] * len(spec_bullets)
    impl_used = [False] * len(impl_bullets)
    matches = []

    def _pair(si, ii, via):
        spec_used[si] = True
        impl_used[ii] = True
        matches.append({
            'spec': spec_bullets[si],
            'implementation': impl_bullets[ii],
            'spec_index': si,
            'impl_index': ii,
            'via': via,
        })

    # Pass 1: exact normalized equality
    for si, norm in enumerate(spec_norm):
        for ii, other in enumerate(impl_norm):
            if not impl_used[ii] and norm == other:
                _pair(si, ii, VIA_EXACT)
                break

    # Pass 2: subject-keyed
    spec_subjects = {}
    for si, bullet in enumerate(spec_bullets):
        if spec_used[si]:
            continue
        for subject in subjects_for(bullet, synonyms):
            spec_subjects.setdefault(subject, []).append(si)

    impl_subjects = {}
    impl_subject_sets = []
    for ii, bullet in enumerate(impl_bullets):
        subjects = subjects_for(bullet, synonyms, implementation=True)
        impl_subject_sets.append(set(subjects))
        if impl_used[ii]:
            continue
        for subject in subjects:
            impl_subjects.setdefault(subject, []).append(ii)

    for subject, spec_indices in spec_subjects.items():
        candidates = impl_subjects.get(subject)
        if not candidates:
            continue
        for si in spec_indices:
            if spec_used[si]:
                continue
            for ii in candidates:
                if not impl_used[ii]:
                    _pair(si, ii, VIA_SUBJECT)
                    break

    # Pass 3: token-generation phrasing drift
    for si, norm in enumerate(spec_norm):
        if spec_used[si] or not _mentions_token_generation(norm):
            continue
        for ii, other in enumerate(impl_norm):
            if impl_used[ii]:
                continue
            if (_offers_token_generation(other)
                    or TOKEN_SUBJECT in impl_subject_sets[ii]):
                _pair(si, ii, VIA_FALLBACK)
                break

    return {
        'matches': matches,
        'missing_in_code': [b for si, b in enumerate(spec_bullets)
                            if not spec_used[si]],
        'missing_in_spec': [b for ii, b in enumerate(impl_bullets)
                            if not impl_used[ii]],
        'spec_matched': spec_used,
    }


def is_clean(match_result):
    """True when neither side has unmatched bullets."""
    return not match_result['missing_in_code'] and not match_result['missing_in_spec']
