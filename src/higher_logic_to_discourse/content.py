"""Conversion of legacy Higher Logic markup into Discourse-ready text."""

from __future__ import annotations

import html
import re
from typing import Final

# <pre><code>...</code></pre>, optionally <code=lang>, across lines
_PRE_CODE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"<pre>\s*<code(?:=[a-z]*)?>(.*?)</code>\s*</pre>", re.IGNORECASE | re.DOTALL
)

# A fenced block: a line opening with 3+ backticks, up to a line holding exactly that run.
# An unclosed fence runs to the end of the text, as in CommonMark.
_FENCED_BLOCK_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^(`{3,})(?!`)[^\n]*(?:\n.*?\n\1[ \t]*$|.*\Z)", re.DOTALL | re.MULTILINE
)

_BACKTICK_RUN_PATTERN: Final[re.Pattern[str]] = re.compile(r"`+")


def _fence_for(code: str) -> str:
    longest = max((len(run) for run in _BACKTICK_RUN_PATTERN.findall(code)), default=0)
    return "`" * max(3, longest + 1)


def _replace_code_block(match: re.Match[str]) -> str:
    code = html.unescape(match.group(1))
    fence = _fence_for(code)
    # Fences must sit on their own lines to be recognized again
    text, start, end = match.string, match.start(), match.end()
    before = "\n" if start > 0 and text[start - 1] != "\n" else ""
    after = "\n" if end < len(text) and text[end] != "\n" else ""
    return f"{before}{fence}\n{code}\n{fence}{after}"


def transform_body(text: str | None) -> str | None:
    """Rewrite legacy ``<pre><code>`` blocks as fenced code blocks.

    Entities are decoded inside the code only; the rest of the body is left
    for Discourse to render. Text already inside a fenced block is never
    touched, so running the transform twice gives the same result as once.
    """
    if not text:
        return text

    parts: list[str] = []
    position = 0
    for fenced in _FENCED_BLOCK_PATTERN.finditer(text):
        parts.append(_PRE_CODE_PATTERN.sub(_replace_code_block, text[position : fenced.start()]))
        parts.append(fenced.group(0))
        position = fenced.end()
    parts.append(_PRE_CODE_PATTERN.sub(_replace_code_block, text[position:]))
    return "".join(parts)


def decode_title(text: str | None) -> str:
    """Decode HTML entities in a title-like field (subjects, names)."""
    if not text:
        return ""
    return html.unescape(text).strip()


def excerpt(text: str | None, length: int = 40) -> str:
    """Short single-line preview of a body for log messages."""
    if not text:
        return ""
    flat = " ".join(text.split())
    return flat if len(flat) <= length else f"{flat[:length]}..."
