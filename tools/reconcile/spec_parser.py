"""Spec document parsing.

Parses checklist specs (title, Description, Files, Checks, meta block,
generation comment) into plain dicts. The Checks section is the only
required section besides the title.
"""

import json
import os
import re

STATUS_UNCHECKED = 'unchecked'
STATUS_PASS = 'pass'
STATUS_FAIL = 'fail'

# Glyph written back for each status
STATUS_GLYPHS = {
    STATUS_UNCHECKED: ' ',
    STATUS_PASS: '\U0001F7E9',
    STATUS_FAIL: '\U0001F7E5',
}

# Legacy "done" markers parse as pass
_GLYPH_STATUS = {
    ' ': STATUS_UNCHECKED,
    '': STATUS_UNCHECKED,
    'x': STATUS_PASS,
    'X': STATUS_PASS,
    '✓': STATUS_PASS,
    '✔': STATUS_PASS,
    '\U0001F7E9': STATUS_PASS,
    '\U0001F7E5': STATUS_FAIL,
}

CHECK_ITEM_RE = re.compile(
    r'^(?P<indent>\s*)[-*]\s*\[(?P<glyph>[^\]]{0,2})\]\s*(?P<text>.*?)\s*$')
HEADING_RE = re.compile(r'^(#{1,6})\s+(.+?)\s*$')
CHECKS_HEADING_RE = re.compile(r'^##\s+Checks\s*$', re.IGNORECASE)
META_RE = re.compile(r'<!--\s*meta:\s*(.*?)-->', re.DOTALL)
# Start of the trailing meta / generation block
TRAILING_BLOCK_RE = re.compile(r'^<!--\s*(?:meta:|generated via\b)',
                               re.IGNORECASE)
GENERATED_RE = re.compile(
    r'<!--\s*generated via\s+(?P<tool>\S+)\s+v(?P<version>\S+)\s+on\s+'
    r'(?P<date>.+?)\s*-->')


class SpecNotFoundError(Exception):
    """Raised when a spec name or path resolves to no file."""


class SpecFormatError(ValueError):
    """Raised when a spec lacks its title or its Checks section."""

    def __init__(self, path, message):
        super().__init__(f'{path}: {message}')
        self.path = path


def read_spec_file(path):
    """Read and return spec file content, line endings untouched."""
    with open(path, 'r', encoding='utf-8', newline='') as f:
        return f.read()


def parse_check_line(line):
    """Parse one checklist line.

    Returns dict {'text', 'status', 'glyph'} or None if the line is not a
    check item.
    """
    match = CHECK_ITEM_RE.match(line)
    if not match:
        return None
    glyph = match.group('glyph')
    status = _GLYPH_STATUS.get(glyph.strip() or ' ')
    if status is None:
        return None
    return {
        'text': match.group('text'),
        'status': status,
        'glyph': glyph,
    }


def find_checks_section(lines):
    """Locate the Checks section in a list of lines.

    Returns (heading_index, end_index) where end_index is exclusive, or
    None when there is no Checks heading. The section ends at the next
    level 1-2 heading, at the trailing meta / generated comment, or at end
    of document. Other HTML comments stay inside the section.
    """
    start = None
    for i, line in enumerate(lines):
        if CHECKS_HEADING_RE.match(line.rstrip('\r\n')):
            start = i
            break
    if start is None:
        return None

    end = len(lines)
    for j in range(start + 1, len(lines)):
        stripped = lines[j].rstrip('\r\n')
        if re.match(r'^#{1,2}\s', stripped) or TRAILING_BLOCK_RE.match(stripped):
            end = j
            break
    return start, end


def parse_sections(content):
    """Parse markdown sections by heading.

    Returns dict mapping heading text (lowercase) to the section body.
    """
    sections = {}
    current_heading = None
    current_lines = []

    for line in content.split('\n'):
        heading_match = re.match(r'^(#{2,4})\s+(.+)', line)
        if heading_match:
            if current_heading is not None:
                sections[current_heading] = '\n'.join(current_lines)
            current_heading = heading_match.group(2).strip().lower()
            current_lines = []
        elif TRAILING_BLOCK_RE.match(line) and current_heading is not None:
            sections[current_heading] = '\n'.join(current_lines)
            current_heading = None
            current_lines = []
        else:
            current_lines.append(line)

    if current_heading is not None:
        sections[current_heading] = '\n'.join(current_lines)

    return sections


def parse_title(content):
    """Return the document title from the first '# ' line, or ''."""
    for line in content.split('\n'):
        match = re.match(r'^#\s+(.+?)\s*$', line)
        if match:
            title = match.group(1)
            if title.lower().startswith('feature:'):
                title = title[len('feature:'):].strip()
            return title
    return ''


def parse_files_list(section_text):
    """Extract '- path' entries from a Files section body."""
    files = []
    for line in section_text.split('\n'):
        match = re.match(r'^\s*[-*]\s+`?([^`\s][^`]*?)`?\s*$', line)
        if match and not CHECK_ITEM_RE.match(line):
            files.append(match.group(1))
    return files


def parse_checks(content):
    """Extract check items from the Checks section, in document order."""
    lines = content.split('\n')
    bounds = find_checks_section(lines)
    if bounds is None:
        return None
    start, end = bounds
    checks = []
    for line in lines[start + 1:end]:
        item = parse_check_line(line)
        if item is not None:
            checks.append(item)
    return checks


def validate_meta(data):
    """Validate a decoded meta block against its schema.

    Schema: {"files": [str, ...], "file_hashes": {str: str}}, both keys
    optional, extra keys allowed.

    Returns a list of error strings (empty when valid).
    """
    errors = []
    if not isinstance(data, dict):
        return ['meta block must be a JSON object']

    files = data.get('files')
    if files is not None:
        if not isinstance(files, list):
            errors.append('"files" must be a list of strings')
        elif not all(isinstance(f, str) for f in files):
            errors.append('"files" must be a list of strings')

    hashes = data.get('file_hashes')
    if hashes is not None:
        if not isinstance(hashes, dict):
            errors.append('"file_hashes" must map strings to strings')
        elif not all(isinstance(k, str) and isinstance(v, str)
                     for k, v in hashes.items()):
            errors.append('"file_hashes" must map strings to strings')

    return errors


def parse_meta(content):
    """Parse the trailing meta block.

    Returns a typed result dict:
        {'status': 'ABSENT'|'OK'|'INVALID', 'files': [...],
         'file_hashes': {...}, 'errors': [...]}
    """
    result = {'status': 'ABSENT', 'files': [], 'file_hashes': {}, 'errors': []}
    match = META_RE.search(content)
    if not match:
        return result

    text = match.group(1).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        result['status'] = 'INVALID'
        result['errors'] = [f'malformed JSON: {e.msg} (line {e.lineno})']
        return result

    errors = validate_meta(data)
    if errors:
        result['status'] = 'INVALID'
        result['errors'] = errors
        return result

    result['status'] = 'OK'
    result['files'] = list(data.get('files') or [])
    result['file_hashes'] = dict(data.get('file_hashes') or {})
    return result


def parse_generated(content):
    """Parse the generation comment. Returns dict or None."""
    match = GENERATED_RE.search(content)
    if not match:
        return None
    return {
        'tool': match.group('tool'),
        'version': match.group('version'),
        'date': match.group('date'),
    }


def parse_spec(content, path='<spec>'):
    """Parse a spec document.

    Raises SpecFormatError when the title or the Checks section is missing.
    """
    title = parse_title(content)
    if not title:
        raise SpecFormatError(path, 'missing title line ("# <Title>")')

    checks = parse_checks(content)
    if checks is None:
        raise SpecFormatError(path, 'missing "## Checks" section')

    sections = parse_sections(content)
    files = parse_files_list(sections.get('files', ''))

    return {
        'path': path,
        'title': title,
        'description': sections.get('description', '').strip(),
        'files': files,
        'checks': checks,
        'meta': parse_meta(content),
        'generated': parse_generated(content),
    }


def load_spec(path):
    """Read and parse the spec at path."""
    if not os.path.isfile(path):
        raise SpecNotFoundError(f'Spec not found: {path}')
    return parse_spec(read_spec_file(path), path)


def list_spec_files(specs_dir):
    """List spec documents under specs_dir (recursive), sorted."""
    found = []
    if not os.path.isdir(specs_dir):
        return found
    for root, dirs, files in os.walk(specs_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith('.'))
        for fname in files:
            if fname.endswith('.md'):
                found.append(os.path.join(root, fname))
    return sorted(found)


def get_spec_slug(path):
    """Get the spec slug from a filepath (filename without .md)."""
    return os.path.splitext(os.path.basename(path))[0]


def find_spec(name, specs_dir):
    """Resolve a spec name to a path.

    Tries, in order: exact slug, direct path, slug substring. Returns
    (path, other_candidates). Raises SpecNotFoundError when nothing matches.
    """
    spec_files = list_spec_files(specs_dir)

    exact = [p for p in spec_files if get_spec_slug(p) == name]
    if exact:
        return exact[0], exact[1:]

    if os.path.isfile(name):
        return name, []

    wanted = name.lower()
    if wanted.endswith('.md'):
        wanted = wanted[:-3]
    partial = [p for p in spec_files if wanted in get_spec_slug(p).lower()]
    if partial:
        return partial[0], partial[1:]

    raise SpecNotFoundError(f'Spec not found: {name}')
