"""Data models shared by the processing stages."""

import bisect
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Generic, Iterator, List, Mapping, Optional, Tuple, TypeVar

from .errors import ErrorKind

T = TypeVar("T")


@dataclass(frozen=True)
class Diagnostic:
    """
    A non-fatal problem found while processing a paper.

    ``offset`` is a character offset (a Python str index) into ``file``, not a
    byte offset.
    """
    kind: ErrorKind
    message: str
    file: Optional[str] = None
    offset: Optional[int] = None

    def __str__(self) -> str:
        where = self.file or "?"
        if self.offset is not None:
            where = f"{where}:{self.offset}"
        return f"{self.kind.value} at {where}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    """A value together with the diagnostics collected while producing it."""
    value: T
    diagnostics: Tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class SourceTree:
    """Text files of one paper's source bundle, keyed by relative POSIX path."""
    files: Mapping[str, str]
    entry: str
    root: Optional[Path] = None
    assets: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))

    @classmethod
    def from_files(cls, files: Mapping[str, str], entry: str = "main.tex") -> "SourceTree":
        return cls(files=files, entry=entry)

    def __contains__(self, path: str) -> bool:
        return path in self.files

    def read(self, path: str) -> str:
        return self.files[path]


@dataclass(frozen=True)
class Span:
    origin: str
    offset: int
    text: str


@dataclass(frozen=True)
class FlattenedDocument:
    """Ordered spans produced by inlining every include directive."""
    spans: Tuple[Span, ...]

    @property
    def text(self) -> str:
        return "".join(span.text for span in self.spans)

    @property
    def size(self) -> int:
        return sum(len(span.text.encode("utf-8")) for span in self.spans)

    def locate(self, position: int) -> Tuple[Optional[str], int]:
        """Map an offset in ``text`` back to (origin file, offset in that file)."""
        if not self.spans:
            return None, position
        starts = []
        total = 0
        for span in self.spans:
            starts.append(total)
            total += len(span.text)
        index = max(bisect.bisect_right(starts, position) - 1, 0)
        span = self.spans[index]
        return span.origin, span.offset + (position - starts[index])


class SectionKind(str, Enum):
    TITLE = "title"
    ABSTRACT = "abstract"
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    BIBLIOGRAPHY = "bibliography"
    APPENDIX = "appendix"


@dataclass(frozen=True)
class Section:
    kind: SectionKind
    order: int
    position: int
    raw: str
    origin: Optional[str] = None
    heading: Optional[str] = None
    level: Optional[int] = None
    in_appendix: bool = False
    body_start: int = 0
    body_end: Optional[int] = None

    @property
    def body(self) -> str:
        end = len(self.raw) if self.body_end is None else self.body_end
        return self.raw[self.body_start:end]


class MathKind(str, Enum):
    INLINE = "inline"
    DISPLAY = "display"


@dataclass(frozen=True)
class MathSpan:
    kind: MathKind
    content: str
    environment: Optional[str] = None


@dataclass(frozen=True)
class Caption:
    label: Optional[str]
    text: str


@dataclass(frozen=True)
class ContentRecord:
    section: Section
    narrative_text: str
    math: Tuple[MathSpan, ...] = ()
    captions: Tuple[Caption, ...] = ()
    citations: Tuple[str, ...] = ()
    graphics: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StructuredDocument:
    """
    The processor's output for one paper.

    ``entries`` keeps the (Section, ContentRecord) pairs in document order.
    ``truncated`` is set when sections were dropped to respect a size budget
    or because appendices were excluded.
    """
    paper_id: str
    entries: Tuple[Tuple[Section, ContentRecord], ...]
    entry_file: Optional[str] = None
    source_file_count: int = 0
    truncated: bool = False
    authors: Tuple[str, ...] = ()
    assets: Tuple[str, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()

    def __iter__(self) -> Iterator[Tuple[Section, ContentRecord]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def sections(self) -> List[Section]:
        return [section for section, _ in self.entries]

    @property
    def records(self) -> List[ContentRecord]:
        return [record for _, record in self.entries]

    @property
    def degraded(self) -> bool:
        return bool(self.diagnostics)

    @property
    def title(self) -> Optional[str]:
        for section, _ in self.entries:
            if section.kind == SectionKind.TITLE:
                return section.heading
        return None

    @property
    def abstract(self) -> Optional[str]:
        for section, record in self.entries:
            if section.kind == SectionKind.ABSTRACT:
                return record.narrative_text
        return None

    @property
    def equations(self) -> List[str]:
        return [
            span.content
            for record in self.records
            for span in record.math
            if span.kind == MathKind.DISPLAY
        ]

    @property
    def citations(self) -> List[str]:
        return [
            key
            for section, record in self.entries
            if section.kind != SectionKind.BIBLIOGRAPHY
            for key in record.citations
        ]


@dataclass
class PaperOutcome:
    """What happened to one paper during a batch run."""
    paper_id: str
    status: str
    document: Optional[StructuredDocument] = None
    error: Optional[Exception] = None
    note_path: Optional[Path] = None
    attempts: int = 0
    diagnostics: List[Diagnostic] = field(default_factory=list)

    SUCCEEDED = "succeeded"
    DEGRADED = "degraded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def ok(self) -> bool:
        return self.status in (self.SUCCEEDED, self.DEGRADED, self.SKIPPED)

    @property
    def result(self):
        """The StructuredDocument on success, the error otherwise."""
        return self.document if self.error is None else self.error
