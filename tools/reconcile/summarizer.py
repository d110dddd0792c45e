"""Code summarizer: LLM-based action bullet extraction.

Sends concatenated source files to an LLM and asks for one imperative
"verb + object" bullet per line. The raw reply is returned; parsing and
filtering happen in bullet_extract.
"""

import anthropic

DEFAULT_MODEL = 'claude-sonnet-4-20250514'

# Per-file truncation keeps the prompt inside the context window
MAX_CHARS_PER_FILE = 10000
MAX_TOTAL_CHARS = 150000

SYSTEM_PROMPT = (
    'You are a code-to-checklist analyzer. Given source files, list the '
    'key functional actions the code performs.\n\n'
    'Rules:\n'
    '- One action per line, each line starting with "- ".\n'
    '- Use the form "verb + object" in the imperative present tense '
    '(e.g. "validate user credentials").\n'
    '- One action per bullet; no sub-bullets, no numbering.\n'
    '- Skip trivial actions such as return, print, log, console output '
    'unless they are the primary functionality.\n'
    '- Respond with ONLY the bullet list: no introduction, no reasoning, '
    'no closing remarks.'
)


class SummarizerError(Exception):
    """Raised when the summarizer call fails or returns nothing usable."""


def build_source_text(file_contents):
    """Concatenate {path: content} into one prompt body.

    Each file is truncated to MAX_CHARS_PER_FILE; a file that would take
    the total past MAX_TOTAL_CHARS is left out, as is every file after it.
    """
    parts = []
    total = 0
    for path, content in file_contents.items():
        if len(content) > MAX_CHARS_PER_FILE:
            content = (content[:MAX_CHARS_PER_FILE]
                       + '\n# ... [file truncated] ...')
        if total + len(content) > MAX_TOTAL_CHARS:
            break
        parts.append(f'# File: {path}\n{content}')
        total += len(content)
    return '\n\n'.join(parts)


def _strip_fences(text):
    """Strip markdown code fences if present."""
    text = text.strip()
    if text.startswith('```'):
        lines = text.split('\n')
        text = '\n'.join(lines[1:-1]) if len(lines) > 2 else text
        text = text.strip()
    return text


def make_summarizer(model=DEFAULT_MODEL, client=None, max_tokens=1500):
    """Build a summarize_to_bullets(source_text) -> str callable.

    The Anthropic client is created once and reused for every call.
    Raises SummarizerError if the client cannot be initialized.
    """
    if client is None:
        try:
            client = anthropic.Anthropic()
        except Exception as e:
            raise SummarizerError(
                f'failed to initialize Anthropic client: {e}') from e

    def summarize_to_bullets(source_text):
        user_prompt = (
            'Extract the key actions performed by this code as a list of '
            'imperative action bullets.\n\n'
            'Files to analyze:\n'
            f'{source_text}'
        )
        try:
            response = client.messages.create(
                model=model,
                max_tokens=max_tokens,
                system=SYSTEM_PROMPT,
                messages=[{'role': 'user', 'content': user_prompt}],
            )
            text = response.content[0].text
        except anthropic.APIError as e:
            raise SummarizerError(f'summarizer call failed: {e}') from e
        except (IndexError, AttributeError) as e:
            raise SummarizerError('summarizer returned no text') from e

        text = _strip_fences(text)
        if not text:
            raise SummarizerError('summarizer returned an empty reply')
        return text

    return summarize_to_bullets
