import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import EmptyDocument
from .latex import (
    find_environment_end, in_regions, is_escaped, read_group, read_macro_arguments, read_optional, to_plain_text,
    verbatim_regions,
)
from .models import FlattenedDocument, Section, SectionKind

HEADING_LEVELS = {'section': 1, 'subsection': 2, 'subsubsection': 3}

MARK_RE = re.compile(
    r'\\(?:(?P<word>section|subsection|subsubsection|title|abstract|appendix|bibliography|printbibliography)'
    r'(?![A-Za-z@])(?P<star>\*?)'
    r'|begin\s*\{(?P<env>abstract|thebibliography|appendix|appendices)\})'
)
DOCUMENT_BEGIN_RE = re.compile(r'\\begin\s*\{document\}')
DOCUMENT_END_RE = re.compile(r'\\end\s*\{document\}')
AUTHOR_RE = re.compile(r'\\author(?![A-Za-z@])')
AUTHOR_SPLIT_RE = re.compile(r'\\(?:and|AND)(?![A-Za-z@])|,|;')
AUTHOR_NOISE_RE = re.compile(r'\\(?:thanks|inst|footnote|footnotemark|orcid|email|affiliation)(?![A-Za-z@])\*?')
SUPERSCRIPT_RE = re.compile(r'\$\^\{?[^$]*\}?\$|\\textsuperscript\s*\{[^}]*\}')

BLOCK = 'block'
HEADING = 'heading'
APPENDIX = 'appendix'


@dataclass
class _Mark:
    role: str
    kind: Optional[SectionKind]
    start: int
    end: int
    body_start: int
    body_end: int
    heading: Optional[str] = None
    level: Optional[int] = None


def _parse_mark(text: str, match: 're.Match', body_end: int) -> Optional[_Mark]:
    word = match.group('word')
    env = match.group('env')
    start = match.start()

    if env in ('abstract', 'thebibliography'):
        closing = find_environment_end(text, env, match.end())
        close_start, close_end = closing if closing else (body_end, body_end)
        kind = SectionKind.ABSTRACT if env == 'abstract' else SectionKind.BIBLIOGRAPHY
        return _Mark(BLOCK, kind, start, close_end, match.end(), close_start)
    if env in ('appendix', 'appendices') or word == 'appendix':
        return _Mark(APPENDIX, None, start, match.end(), match.end(), match.end())
    if word == 'printbibliography':
        _, end = read_optional(text, match.end())
        return _Mark(BLOCK, SectionKind.BIBLIOGRAPHY, start, end, end, end)

    _, pos = read_optional(text, match.end())
    group = read_group(text, pos)
    if group is None:
        return None
    content, end = group
    inner_start = end - len(content) - 1
    if word in HEADING_LEVELS:
        return _Mark(HEADING, SectionKind.HEADING, start, end, end, end,
                     heading=to_plain_text(content), level=HEADING_LEVELS[word])
    if word == 'title':
        return _Mark(BLOCK, SectionKind.TITLE, start, end, inner_start, end - 1,
                     heading=to_plain_text(content))
    if word == 'abstract':
        return _Mark(BLOCK, SectionKind.ABSTRACT, start, end, inner_start, end - 1)
    return _Mark(BLOCK, SectionKind.BIBLIOGRAPHY, start, end, inner_start, end - 1)


def _is_blank(raw: str) -> bool:
    return not to_plain_text(raw)


def _document_bounds(text: str):
    begin = DOCUMENT_BEGIN_RE.search(text)
    body_start = begin.end() if begin else 0
    end = DOCUMENT_END_RE.search(text, body_start)
    body_end = end.start() if end else len(text)
    return body_start, body_end


def _collect_marks(text: str, body_start: int, body_end: int) -> List[_Mark]:
    """Find structural marks, keeping only the first title and abstract before any heading."""
    marks = []
    verbatim = verbatim_regions(text)
    for match in MARK_RE.finditer(text, 0, body_end):
        if is_escaped(text, match.start()) or in_regions(verbatim, match.start()):
            continue
        mark = _parse_mark(text, match, body_end)
        if mark is None:
            continue
        if mark.kind != SectionKind.TITLE and mark.start < body_start:
            continue
        marks.append(mark)

    first_heading = next((m.start for m in marks if m.role == HEADING), body_end)
    selected = []
    seen_title = seen_abstract = False
    for mark in marks:
        if mark.kind == SectionKind.TITLE:
            if seen_title or mark.start > first_heading:
                continue
            seen_title = True
        elif mark.kind == SectionKind.ABSTRACT:
            if seen_abstract or mark.start > first_heading:
                continue
            seen_abstract = True
        selected.append(mark)

    if not seen_abstract:
        # \section*{Abstract} stands in for a missing abstract environment.
        for mark in selected:
            if mark.role == HEADING:
                if (mark.heading or '').strip().lower() == 'abstract':
                    mark.kind = SectionKind.ABSTRACT
                    mark.heading = None
                break
    return selected


def segment(flat: FlattenedDocument) -> List[Section]:
    """
    Partition a stripped, flattened document into ordered sections.

    Title and abstract come first when present. Headings open a section that
    runs to the next structural mark; text outside any heading becomes a
    paragraph section. Headings after the appendix marker are tagged APPENDIX.

    Raises:
        EmptyDocument: if nothing but bibliography (or nothing at all) is found
    """
    text = flat.text
    body_start, body_end = _document_bounds(text)
    marks = _collect_marks(text, body_start, body_end)

    front_end = max(
        (m.start for m in marks if m.kind in (SectionKind.TITLE, SectionKind.ABSTRACT)),
        default=-1,
    )
    drafts = []
    in_appendix = False
    cursor = body_start
    open_mark = None

    def flush(end: int):
        if open_mark is not None:
            kind = open_mark.kind
            if kind == SectionKind.HEADING and in_appendix:
                kind = SectionKind.APPENDIX
            drafts.append(dict(
                kind=kind, position=open_mark.start, raw=text[open_mark.start:end],
                heading=open_mark.heading,
                level=open_mark.level if kind != SectionKind.ABSTRACT else None,
                in_appendix=in_appendix, body_start=open_mark.end - open_mark.start, body_end=None,
            ))
            return
        raw = text[cursor:end]
        if end <= front_end or _is_blank(raw):
            return
        drafts.append(dict(
            kind=SectionKind.PARAGRAPH, position=cursor, raw=raw, heading=None, level=None,
            in_appendix=in_appendix, body_start=0, body_end=None,
        ))

    for mark in marks:
        if mark.start < body_start:
            # Title declared in the preamble.
            drafts.append(dict(
                kind=SectionKind.TITLE, position=mark.start, raw=text[mark.start:mark.end],
                heading=mark.heading, level=None, in_appendix=False,
                body_start=mark.body_start - mark.start, body_end=mark.body_end - mark.start,
            ))
            continue
        if mark.start < cursor:
            continue
        flush(mark.start)
        open_mark = None
        cursor = mark.end
        if mark.role == APPENDIX:
            in_appendix = True
        elif mark.role == HEADING:
            open_mark = mark
        else:
            drafts.append(dict(
                kind=mark.kind, position=mark.start, raw=text[mark.start:mark.end],
                heading=mark.heading, level=None, in_appendix=in_appendix,
                body_start=mark.body_start - mark.start, body_end=mark.body_end - mark.start,
            ))
    flush(body_end)

    if not any(d['kind'] != SectionKind.BIBLIOGRAPHY for d in drafts):
        raise EmptyDocument("document has no content besides bibliography" if drafts else "document is empty")

    drafts.sort(key=lambda d: d['position'])
    return [
        Section(order=order, origin=flat.locate(draft['position'])[0], **draft)
        for order, draft in enumerate(drafts)
    ]


def _drop_author_noise(block: str) -> str:
    """Remove \\thanks-like macros (and their arguments) from an author block."""
    out = []
    last = 0
    for match in AUTHOR_NOISE_RE.finditer(block):
        if match.start() < last:
            continue
        _, end = read_macro_arguments(block, match.end(), 1)
        out.append(block[last:match.start()])
        last = end
    out.append(block[last:])
    return SUPERSCRIPT_RE.sub('', ''.join(out))


def extract_authors(text: str) -> List[str]:
    """Collect author names from \\author{...} declarations."""
    authors = []
    for match in AUTHOR_RE.finditer(text):
        if is_escaped(text, match.start()):
            continue
        _, pos = read_optional(text, match.end())
        group = read_group(text, pos)
        if group is None:
            continue
        for chunk in AUTHOR_SPLIT_RE.split(_drop_author_noise(group[0])):
            # The first line of each chunk is the name; later lines are affiliations.
            name = to_plain_text(re.split(r'\\\\', chunk, maxsplit=1)[0])
            if name and name not in authors:
                authors.append(name)
    return authors
