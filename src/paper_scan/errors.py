"""Error taxonomy for paper processing and note generation."""

from enum import Enum
from typing import Optional, Sequence


class ErrorKind(str, Enum):
    MISSING_ENTRY_FILE = "MissingEntryFile"
    CYCLIC_INCLUDE = "CyclicInclude"
    UNRESOLVED_INCLUDE = "UnresolvedInclude"
    SIZE_BUDGET_EXCEEDED = "SizeBudgetExceeded"
    MALFORMED_MATH = "MalformedMath"
    EMPTY = "Empty"
    INVALID_PAPER_ID = "InvalidPaperId"
    SOURCE_UNAVAILABLE = "SourceUnavailable"
    TIMEOUT = "Timeout"
    NOTE_GENERATION_FAILED = "NoteGenerationFailed"


class ProcessingError(Exception):
    """
    Base class for everything that stops a single paper from being processed.

    Attributes:
        kind: The ErrorKind tag used in batch summaries
        file: Source file the error points at, if any
        offset: Character offset (str index, not bytes) inside ``file``, if known
        retryable: Whether the pipeline may try the failing step again
    """

    kind = ErrorKind.EMPTY
    retryable = False

    def __init__(self, message: str, file: Optional[str] = None, offset: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.file = file
        self.offset = offset

    def __str__(self) -> str:
        if self.file is None:
            return self.message
        if self.offset is None:
            return f"{self.file}: {self.message}"
        return f"{self.file}:{self.offset}: {self.message}"


class MissingEntryFile(ProcessingError):
    kind = ErrorKind.MISSING_ENTRY_FILE

    def __init__(self, message: str, candidates: Sequence[str] = ()):
        super().__init__(message)
        self.candidates = tuple(candidates)


class CyclicInclude(ProcessingError):
    kind = ErrorKind.CYCLIC_INCLUDE

    def __init__(self, chain: Sequence[str], offset: Optional[int] = None):
        self.chain = tuple(chain)
        super().__init__(
            "cyclic include: " + " -> ".join(self.chain),
            file=self.chain[-2] if len(self.chain) > 1 else self.chain[0],
            offset=offset,
        )


class SizeBudgetExceeded(ProcessingError):
    kind = ErrorKind.SIZE_BUDGET_EXCEEDED

    def __init__(self, limit: int, observed: int, measure: str = "bytes",
                 file: Optional[str] = None, offset: Optional[int] = None):
        self.limit = limit
        self.observed = observed
        self.measure = measure
        super().__init__(
            f"flattened document exceeds {measure} budget ({observed} > {limit})",
            file=file,
            offset=offset,
        )


class EmptyDocument(ProcessingError):
    kind = ErrorKind.EMPTY


class InvalidPaperId(ProcessingError):
    kind = ErrorKind.INVALID_PAPER_ID


class SourceUnavailable(ProcessingError):
    kind = ErrorKind.SOURCE_UNAVAILABLE

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class PaperTimeout(ProcessingError):
    kind = ErrorKind.TIMEOUT


class NoteGenerationFailed(ProcessingError):
    kind = ErrorKind.NOTE_GENERATION_FAILED

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class LLMError(Exception):
    """Failure reported by the completion API client."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: Optional[bool] = None):
        super().__init__(message)
        self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable


class RateLimited(LLMError):
    retryable = True


class AuthFailed(LLMError):
    retryable = False


class LLMTimeout(LLMError):
    retryable = True


class MalformedResponse(LLMError):
    retryable = False
