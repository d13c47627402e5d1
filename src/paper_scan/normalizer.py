import re
from typing import Callable, List, Optional, Tuple

from .errors import ErrorKind
from .latex import (
    BEGIN_ENV_RE, FLOAT_ENVIRONMENTS, INLINE_VERBATIM_RE, MATH_ENVIRONMENTS, find_environment_end,
    inline_verbatim_end, is_escaped, is_verbatim_environment, read_group, read_macro_arguments, read_optional, to_plain_text,
)
from .models import (
    Caption, ContentRecord, Diagnostic, MathKind, MathSpan, Result, Section, SectionKind,
)

CITE_RE = re.compile(r'\\([A-Za-z]*cite[A-Za-z]*|nocite)\*?(?![A-Za-z@])')
BIBITEM_RE = re.compile(r'\\bibitem(?![A-Za-z@])')
CAPTION_RE = re.compile(r'\\(?:sub)?caption(?![A-Za-z@])\*?')
LABEL_RE = re.compile(r'\\label\s*\{([^}]*)\}')
GRAPHICS_RE = re.compile(r'\\includegraphics\*?\s*(?:\[[^\]]*\])?\s*\{([^}]*)\}')

Locator = Callable[[int], Tuple[Optional[str], int]]


def _find_unescaped(text: str, token: str, pos: int) -> int:
    while True:
        index = text.find(token, pos)
        if index == -1 or not is_escaped(text, index):
            return index
        pos = index + 1


def _split_keys(raw: str) -> List[str]:
    return [key.strip() for key in raw.split(',') if key.strip()]


def _read_citation(text: str, match: 're.Match') -> Tuple[List[str], int]:
    """Read a \\cite-family key list; up to two optional notes are skipped."""
    pos = match.end()
    for _ in range(2):
        _, pos = read_optional(text, pos)
    group = read_group(text, pos)
    if group is None:
        return [], match.end()
    return _split_keys(group[0]), group[1]


def extract_citations(text: str) -> List[str]:
    """Return every citation key in order of appearance, duplicates included."""
    keys = []
    for match in CITE_RE.finditer(text):
        if is_escaped(text, match.start()):
            continue
        found, _ = _read_citation(text, match)
        keys.extend(found)
    return keys


def strip_citations(text: str) -> str:
    """Remove \\cite-family macros together with their key lists."""
    out = []
    last = 0
    for match in CITE_RE.finditer(text):
        if match.start() < last or is_escaped(text, match.start()):
            continue
        _, end = _read_citation(text, match)
        out.append(text[last:match.start()])
        last = end
    out.append(text[last:])
    return ''.join(out)


def extract_bibitems(text: str) -> List[str]:
    keys = []
    for match in BIBITEM_RE.finditer(text):
        _, pos = read_optional(text, match.end())
        group = read_group(text, pos)
        if group is not None:
            keys.extend(_split_keys(group[0]))
    return keys


def extract_captions(float_body: str) -> List[Caption]:
    """
    Pull captions out of a figure/table body, pairing each with its \\label.

    A caption takes the first label between it and the next caption; when a
    float has a single caption any label inside the float belongs to it.
    """
    captions = []
    matches = [m for m in CAPTION_RE.finditer(float_body) if not is_escaped(float_body, m.start())]
    labels = [(m.start(), m.group(1).strip()) for m in LABEL_RE.finditer(float_body)]
    for index, match in enumerate(matches):
        args, _ = read_macro_arguments(float_body, match.end(), 1)
        if not args:
            continue
        next_start = matches[index + 1].start() if index + 1 < len(matches) else len(float_body)
        label = next((name for pos, name in labels if match.start() <= pos < next_start), None)
        if label is None and len(matches) == 1 and labels:
            label = labels[0][1]
        captions.append(Caption(label=label, text=to_plain_text(strip_citations(args[0]))))
    return captions


class _Scanner:
    """One left-to-right pass over a section body."""

    def __init__(self, text: str, base: int, locate: Locator):
        self.text = text
        self.base = base
        self.locate = locate
        self.last = 0
        self.pieces = []  # (text, is_verbatim)
        self.math = []
        self.captions = []
        self.citations = []
        self.graphics = []
        self.diagnostics = []

    def cut(self, pos: int, resume: int):
        """Keep text up to ``pos`` as narrative and continue after ``resume``."""
        self.pieces.append((self.text[self.last:pos], False))
        self.last = resume

    def unclosed(self, pos: int, delimiter: str, kind: MathKind, environment: Optional[str] = None):
        file, offset = self.locate(self.base + pos)
        self.diagnostics.append(Diagnostic(
            kind=ErrorKind.MALFORMED_MATH,
            message=f"unclosed math delimiter {delimiter}",
            file=file,
            offset=offset,
        ))
        content = self.text[pos + len(delimiter):]
        self.math.append(MathSpan(kind=kind, content=content.strip(), environment=environment))
        self.cut(pos, len(self.text))

    def math_span(self, start: int, content: str, end: int, kind: MathKind, environment: Optional[str] = None):
        self.math.append(MathSpan(kind=kind, content=content.strip(), environment=environment))
        self.cut(start, end)

    def scan(self) -> None:
        text = self.text
        n = len(text)
        i = 0
        while i < n:
            char = text[i]
            if char == '$':
                delimiter = '$$' if text.startswith('$$', i) else '$'
                kind = MathKind.DISPLAY if delimiter == '$$' else MathKind.INLINE
                close = _find_unescaped(text, delimiter, i + len(delimiter))
                if close == -1:
                    self.unclosed(i, delimiter, kind)
                    return
                self.math_span(i, text[i + len(delimiter):close], close + len(delimiter), kind)
                i = self.last
                continue
            if char != '\\':
                i += 1
                continue

            opener = text[i:i + 2]
            if opener in ('\\(', '\\['):
                closer = '\\)' if opener == '\\(' else '\\]'
                kind = MathKind.INLINE if opener == '\\(' else MathKind.DISPLAY
                close = text.find(closer, i + 2)
                if close == -1:
                    self.unclosed(i, opener, kind)
                    return
                self.math_span(i, text[i + 2:close], close + 2, kind)
                i = self.last
                continue

            env = BEGIN_ENV_RE.match(text, i)
            if env:
                if not self.environment(env.group(1).strip(), i, env.end()):
                    return
                i = self.last
                continue

            cite = CITE_RE.match(text, i)
            if cite:
                keys, end = _read_citation(text, cite)
                self.citations.extend(keys)
                self.cut(i, end)
                i = end
                continue

            graphics = GRAPHICS_RE.match(text, i)
            if graphics:
                self.graphics.append(graphics.group(1).strip())
                self.cut(i, graphics.end())
                i = graphics.end()
                continue

            inline = INLINE_VERBATIM_RE.match(text, i)
            end = inline_verbatim_end(text, inline.end(), inline.group(1)) if inline else None
            if end is not None:
                self.cut(i, end)
                self.pieces.append((text[inline.end() + 1:end - 1], True))
                i = end
                continue
            i += 2
        self.cut(n, n)

    def environment(self, name: str, start: int, body_start: int) -> bool:
        """Handle an environment opening at ``start``; False means the scan is over."""
        text = self.text
        if name in MATH_ENVIRONMENTS:
            closing = find_environment_end(text, name, body_start)
            if closing is None:
                self.unclosed(start, f"\\begin{{{name}}}", MathKind.DISPLAY, environment=name)
                return False
            self.math_span(start, text[body_start:closing[0]], closing[1], MathKind.DISPLAY, environment=name)
            return True

        if name in FLOAT_ENVIRONMENTS or is_verbatim_environment(name):
            closing = find_environment_end(text, name, body_start)
            close_start, close_end = closing if closing else (len(text), len(text))
            body = text[body_start:close_start]
            self.cut(start, close_end)
            if name in FLOAT_ENVIRONMENTS:
                self.captions.extend(extract_captions(body))
                self.citations.extend(extract_citations(body))
                self.graphics.extend(m.group(1).strip() for m in GRAPHICS_RE.finditer(body))
            else:
                self.pieces.append((body.strip('\n'), True))
            return True

        # Any other environment is transparent: drop the \begin{...}, keep the content.
        self.cut(start, body_start)
        return True

    def narrative_text(self) -> str:
        # Verbatim pieces are protected from LaTeX cleanup by placeholders.
        protected = []
        plain = []
        for piece, verbatim in self.pieces:
            if verbatim:
                plain.append(f'\n\n\x00{len(protected)}\x00\n\n')
                protected.append(piece)
            else:
                plain.append(piece)
        text = to_plain_text(''.join(plain))
        for index, piece in enumerate(protected):
            text = text.replace(f'\x00{index}\x00', piece)
        return text


def normalize_section(section: Section, locate: Optional[Locator] = None) -> Result[ContentRecord]:
    """
    Reduce one section to a ContentRecord.

    Math spans are lifted out verbatim, captions and citation keys are
    collected, and what remains becomes plain narrative text. An unclosed math
    delimiter is not fatal: the rest of the section becomes that span's
    content and a malformed-math diagnostic is returned with the record.

    Args:
        section: Section produced by the segmenter
        locate: Maps a flat document offset to (file, offset) for diagnostics

    Returns:
        Result holding the ContentRecord and any diagnostics
    """
    if locate is None:
        def locate(position: int) -> Tuple[Optional[str], int]:
            return section.origin, position - section.position

    body = section.body
    base = section.position + section.body_start

    if section.kind == SectionKind.TITLE:
        record = ContentRecord(section=section, narrative_text=section.heading or to_plain_text(body))
        return Result(record)

    scanner = _Scanner(body, base, locate)
    scanner.scan()
    citations = scanner.citations
    if section.kind == SectionKind.BIBLIOGRAPHY:
        citations = extract_bibitems(body)

    record = ContentRecord(
        section=section,
        narrative_text=scanner.narrative_text(),
        math=tuple(scanner.math),
        captions=tuple(scanner.captions),
        citations=tuple(citations),
        graphics=tuple(scanner.graphics),
    )
    return Result(record, tuple(scanner.diagnostics))
