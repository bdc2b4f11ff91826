"""Build-time variable substitution for manifest files.

Replaces ``${NAME}`` placeholders with values from a key/value environment.
The function is pure: the input text is never modified, and the document
is either substituted as a whole or rejected with a SubstitutionError.

Rules:
- NAME must match [A-Za-z_][A-Za-z0-9_]*
- Unknown names are left verbatim (strict=True rejects them instead)
- ``${`` without a closing brace, or with an invalid name, is malformed
- A value that contains ``${``, or that forms one together with the
  surrounding text, is rejected, so a second pass over the output with the
  same environment never changes it
"""

import re
from typing import Mapping

from errors import SubstitutionError

NAME_PATTERN = re.compile(r'[A-Za-z_][A-Za-z0-9_]*\Z')
OPEN = '${'
CLOSE = '}'

# Longest placeholder text echoed back in error messages
_MAX_ECHO = 40


def _position(text: str, offset: int) -> tuple[int, int]:
    """Return 1-based (line, column) for a character offset."""
    line = text.count('\n', 0, offset) + 1
    line_start = text.rfind('\n', 0, offset) + 1
    return line, offset - line_start + 1


def _error(text: str, offset: int, placeholder: str, reason: str) -> SubstitutionError:
    if len(placeholder) > _MAX_ECHO:
        placeholder = placeholder[:_MAX_ECHO] + '...'
    line, column = _position(text, offset)
    return SubstitutionError(placeholder, offset, line, column, reason)


def find_placeholders(text: str) -> list[tuple[int, str]]:
    """Return (offset, name) for every placeholder in text.

    Raises:
        SubstitutionError: On the first malformed placeholder
    """
    found = []
    pos = 0
    while True:
        start = text.find(OPEN, pos)
        if start < 0:
            return found
        end = text.find(CLOSE, start + len(OPEN))
        if end < 0:
            raise _error(text, start, text[start:].split('\n', 1)[0], 'Unterminated placeholder')
        name = text[start + len(OPEN):end]
        if not NAME_PATTERN.match(name):
            raise _error(text, start, text[start:end + 1], 'Invalid placeholder name')
        found.append((start, name))
        pos = end + 1


def substitute(text: str, env: Mapping[str, str], strict: bool = False) -> str:
    """Substitute ``${NAME}`` placeholders in text from env.

    Args:
        text: Manifest text
        env: Variable values
        strict: Reject placeholders with no matching key

    Returns:
        Substituted text (the input itself when nothing matched)

    Raises:
        SubstitutionError: Malformed or unsafe placeholder, or an
            unresolved one in strict mode
    """
    placeholders = find_placeholders(text)
    if not placeholders:
        return text

    parts: list[str] = []
    out_len = 0
    pos = 0
    kept: set[int] = set()  # output offsets of placeholders copied verbatim
    replaced: list[tuple[int, int, str]] = []  # (output offset, source offset, placeholder)

    for offset, name in placeholders:
        end = offset + len(OPEN) + len(name) + len(CLOSE)
        placeholder = text[offset:end]
        if name not in env:
            if strict:
                raise _error(text, offset, placeholder, 'Unresolved placeholder')
            kept.add(out_len + (offset - pos))
            continue
        value = str(env[name])
        if OPEN in value:
            raise _error(text, offset, placeholder, f"Value of {name} contains a placeholder")
        parts.append(text[pos:offset])
        out_len += offset - pos
        replaced.append((out_len, offset, placeholder))
        parts.append(value)
        out_len += len(value)
        pos = end
    parts.append(text[pos:])
    result = ''.join(parts)

    if not replaced:
        return text

    # A value ending in '$' followed by '{', or starting with '{' after a
    # literal '$', would create a placeholder that did not exist before
    start = result.find(OPEN)
    while start >= 0:
        if start not in kept:
            culprit = replaced[0]
            for entry in replaced:
                if entry[0] <= start + 1:
                    culprit = entry
            _, src_offset, placeholder = culprit
            raise _error(text, src_offset, placeholder, 'Substituted value forms a new placeholder')
        start = result.find(OPEN, start + 1)

    return result
