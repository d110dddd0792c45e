"""Spec mutator: write-back into a spec's Checks section.

Appends discovered bullets as new unchecked check items and records check
statuses. Only lines inside the Checks section are ever touched; every
other byte of the document is preserved. Existing check items are never
removed or reordered.
"""

import os
import re
import tempfile

from bullet_extract import normalize_bullet
from spec_parser import (
    STATUS_GLYPHS,
    STATUS_UNCHECKED,
    SpecFormatError,
    find_checks_section,
    parse_check_line,
    read_spec_file,
)


def write_spec_file(path, content):
    """Write spec content atomically, line endings untouched."""
    parent = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(dir=parent, suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def format_check_line(text, status=STATUS_UNCHECKED):
    return f'- [{STATUS_GLYPHS[status]}] {text}'


def _checks_bounds(lines, path):
    bounds = find_checks_section(lines)
    if bounds is None:
        raise SpecFormatError(path, 'missing "## Checks" section')
    return bounds


def insert_checks(content, bullets, path='<spec>'):
    """Return content with one unchecked item per bullet spliced in.

    New items go directly after the last existing check item of the
    section (or after the heading when the section is empty). Bullets
    already present as check items are skipped.

    Returns (new_content, inserted_bullets).
    """
    lines = content.split('\n')
    start, end = _checks_bounds(lines, path)
    eol = '\r' if lines[start].endswith('\r') else ''

    existing = set()
    insert_at = start + 1
    for i in range(start + 1, end):
        item = parse_check_line(lines[i])
        if item is not None:
            existing.add(normalize_bullet(item['text']))
            insert_at = i + 1

    new_lines = []
    inserted = []
    for bullet in bullets:
        text = bullet.strip()
        key = normalize_bullet(text)
        if not key or key in existing:
            continue
        existing.add(key)
        new_lines.append(format_check_line(text) + eol)
        inserted.append(text)

    if not new_lines:
        return content, []
    lines[insert_at:insert_at] = new_lines
    return '\n'.join(lines), inserted


def default_ask(bullet):
    """Ask on the terminal whether to add a bullet."""
    try:
        answer = input(
            f'I found an action in code that isn\'t in spec: "{bullet}". '
            'Add it to spec? (y/N) ')
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def append_checks(missing_in_spec, spec_path, interactive=False, ask=None):
    """Append implementation-only bullets to the spec's Checks section.

    Batch mode writes all bullets at once. Interactive mode asks per bullet
    and, for each accepted one, re-reads the file right before writing so
    edits made meanwhile are not lost.

    Returns the list of bullets actually appended.
    """
    if not missing_in_spec:
        return []

    if not interactive:
        content = read_spec_file(spec_path)
        new_content, inserted = insert_checks(content, missing_in_spec, spec_path)
        if inserted:
            write_spec_file(spec_path, new_content)
        return inserted

    ask = ask or default_ask
    appended = []
    for bullet in missing_in_spec:
        if not ask(bullet):
            continue
        content = read_spec_file(spec_path)
        new_content, inserted = insert_checks(content, [bullet], spec_path)
        if inserted:
            write_spec_file(spec_path, new_content)
            appended.extend(inserted)
            print(f'Added "{bullet}" to spec')
    return appended


def set_check_statuses(content, statuses, path='<spec>'):
    """Return content with check glyphs rewritten.

    statuses maps check index (document order within the Checks section)
    to a status. Items not in the map keep their glyph.
    """
    lines = content.split('\n')
    start, end = _checks_bounds(lines, path)
    index = 0
    for i in range(start + 1, end):
        if parse_check_line(lines[i]) is None:
            continue
        status = statuses.get(index)
        if status is not None:
            lines[i] = re.sub(r'\[[^\]]{0,2}\]',
                              f'[{STATUS_GLYPHS[status]}]', lines[i], count=1)
        index += 1
    return '\n'.join(lines)


def update_check_statuses(spec_path, statuses):
    """Record per-item statuses in the spec file. Returns True if changed."""
    content = read_spec_file(spec_path)
    new_content = set_check_statuses(content, statuses, spec_path)
    if new_content == content:
        return False
    write_spec_file(spec_path, new_content)
    return True


def reset_checks(spec_path):
    """Mark every check item unchecked. Returns True if the file changed."""
    content = read_spec_file(spec_path)
    lines = content.split('\n')
    start, end = _checks_bounds(lines, spec_path)
    count = sum(1 for line in lines[start + 1:end]
                if parse_check_line(line) is not None)
    return update_check_statuses(
        spec_path, {i: STATUS_UNCHECKED for i in range(count)})
