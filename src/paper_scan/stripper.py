"""
Comment and verbatim stripping.

``strip_comments`` removes everything TeX would never typeset as text:
``%`` comments, ``comment`` environments and ``\\iffalse ... \\fi`` blocks.
Verbatim-class environments and inline ``\\verb`` are copied through
untouched, ``%`` included. The transform is idempotent.
"""

import re
from typing import List, Optional, Tuple

from .latex import (
    BEGIN_ENV_RE, INLINE_VERBATIM_RE, find_environment_end, inline_verbatim_end, is_verbatim_environment,
)
from .models import FlattenedDocument, Span

CONDITIONAL_RE = re.compile(r'\\(if[A-Za-z@]*|fi)(?![A-Za-z@])')
IFFALSE_RE = re.compile(r'\\iffalse(?![A-Za-z@])')

# Control words that start with "if" but never open a conditional.
NOT_CONDITIONALS = frozenset({'iff', 'ifthenelse'})


def _trim_line_tail(out: List[str]) -> bool:
    """
    Drop trailing blanks from the output and report whether it now ends at a line start.
    """
    while out:
        piece = out[-1].rstrip(' \t')
        if piece:
            out[-1] = piece
            return piece.endswith('\n')
        out.pop()
    return True


def _skip_environment(text: str, pos: int) -> Tuple[Optional[str], int]:
    """Return (name, end) when a comment or verbatim environment opens at ``pos``."""
    env = BEGIN_ENV_RE.match(text, pos)
    if env:
        name = env.group(1).strip()
        if name == 'comment' or is_verbatim_environment(name):
            closing = find_environment_end(text, name, env.end())
            return name, closing[1] if closing else len(text)
    return None, pos


def _skip_inline_verbatim(text: str, pos: int) -> Optional[int]:
    inline = INLINE_VERBATIM_RE.match(text, pos)
    if inline is None:
        return None
    return inline_verbatim_end(text, inline.end(), inline.group(1))


def _skip_iffalse(text: str, pos: int) -> int:
    """
    Return the offset just past the \\fi closing an \\iffalse at ``pos``, or -1.

    Conditionals are counted only where strip_comments would keep them, so
    nothing inside comments, comment environments or verbatim text is seen.
    """
    depth = 0
    i = pos
    n = len(text)
    while i < n:
        char = text[i]
        if char == '%':
            i = text.find('\n', i)
            if i == -1:
                return -1
            continue
        if char != '\\':
            i += 1
            continue
        name, end = _skip_environment(text, i)
        if name is not None:
            i = end
            continue
        end = _skip_inline_verbatim(text, i)
        if end is not None:
            i = end
            continue
        conditional = CONDITIONAL_RE.match(text, i)
        if conditional:
            word = conditional.group(1)
            if word == 'fi':
                depth -= 1
                if depth == 0:
                    return conditional.end()
            elif word not in NOT_CONDITIONALS:
                depth += 1
            i = conditional.end()
            continue
        i += 2
    return -1


def strip_comments(text: str) -> str:
    """Remove LaTeX comments, keeping verbatim regions and escaped \\% intact."""
    out = []
    i = 0
    last = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char == '\\':
            name, end = _skip_environment(text, i)
            if name is not None:
                out.append(text[last:i])
                if name != 'comment':
                    out.append(text[i:end])
                i = last = end
                continue
            end = _skip_inline_verbatim(text, i)
            if end is not None:
                i = end
                continue
            if IFFALSE_RE.match(text, i):
                end = _skip_iffalse(text, i)
                if end != -1:
                    out.append(text[last:i])
                    i = last = end
                    continue
            # Control symbol or word: \% and \\ are consumed as a pair.
            i += 2
            continue
        if char == '%':
            out.append(text[last:i])
            at_line_start = _trim_line_tail(out)
            eol = text.find('\n', i)
            if eol == -1:
                i = last = n
            elif at_line_start:
                i = last = eol + 1
            else:
                i = last = eol
            continue
        i += 1
    out.append(text[last:])
    return ''.join(out)


def strip_document(flat: FlattenedDocument) -> FlattenedDocument:
    """Apply strip_comments to every span; a comment never crosses a file boundary."""
    spans = []
    for span in flat.spans:
        text = strip_comments(span.text)
        if text:
            spans.append(Span(origin=span.origin, offset=span.offset, text=text))
    return FlattenedDocument(spans=tuple(spans))
