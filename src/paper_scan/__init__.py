"""
paper-scan: turn arXiv LaTeX sources into structured documents and LLM-written notes.

This package provides functionality to:
- Locate the entry file of a paper's source tree and inline its includes
- Strip comments while keeping verbatim content intact
- Split the document into ordered sections and extract math, captions and citations
- Download sources from arXiv and generate notes for many papers concurrently

Example:
    >>> from paper_scan import process
    >>> document = process("cache/2303.08774")
    >>> document.title
"""

from .config import Config, get_default_cache_dir
from .errors import ProcessingError
from .models import StructuredDocument, PaperOutcome
from .pipeline import process, process_paper, run_batch

__all__ = [
    "process",
    "process_paper",
    "run_batch",
    "Config",
    "StructuredDocument",
    "PaperOutcome",
    "ProcessingError",
    "get_default_cache_dir",
]
