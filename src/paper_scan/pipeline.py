"""
Pipeline driver.

``process`` runs the TeX source processor on one extracted paper directory:
load -> resolve -> strip -> segment -> normalize. ``process_paper`` wraps it
with the external steps (fetch the source, generate the note, write it) and
``run_batch`` runs many papers on a bounded thread pool.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from tqdm import tqdm

from .arxiv import download_arxiv_source, parse_paper_id
from .config import Config
from .errors import LLMError, NoteGenerationFailed, PaperTimeout, ProcessingError, SourceUnavailable
from .llm_client import LLMClient
from .loader import load_source_tree
from .models import ContentRecord, PaperOutcome, Section, SectionKind, StructuredDocument
from .normalizer import normalize_section
from .notes import NoteGenerator, NoteWriter, load_prompt_template, note_path
from .resolver import resolve
from .segmenter import extract_authors, segment
from .stripper import strip_document

Fetcher = Callable[..., Path]
Generator = Callable[..., str]
Writer = Callable[[str, str], Path]

INDEX_FILE = 'processed.txt'


def _apply_budget(entries: List[Tuple[Section, ContentRecord]],
                  config: Config) -> Tuple[List[Tuple[Section, ContentRecord]], bool]:
    """Drop appendix sections if asked and cut the tail once narrative text exceeds the budget."""
    truncated = False
    if config.drop_appendix:
        kept = [(s, r) for s, r in entries if not s.in_appendix]
        truncated = len(kept) != len(entries)
        entries = kept

    if config.max_document_chars is None:
        return entries, truncated
    kept = []
    total = 0
    for section, record in entries:
        total += len(record.narrative_text)
        if total > config.max_document_chars and section.kind not in (SectionKind.TITLE, SectionKind.ABSTRACT):
            truncated = True
            break
        kept.append((section, record))
    return kept, truncated


def process(paper_dir: Union[str, Path], config: Optional[Config] = None,
            paper_id: Optional[str] = None) -> StructuredDocument:
    """
    Turn an extracted arXiv source directory into a StructuredDocument.

    Args:
        paper_dir: Directory holding the paper's source files
        config: Size budgets and appendix handling (defaults to Config())
        paper_id: Identifier recorded on the document (defaults to the directory name)

    Returns:
        The StructuredDocument; non-fatal problems are listed in its diagnostics

    Raises:
        ProcessingError: MissingEntryFile, CyclicInclude, SizeBudgetExceeded or EmptyDocument
    """
    config = config or Config()
    paper_dir = Path(paper_dir)
    paper_id = paper_id or paper_dir.name

    tree = load_source_tree(paper_dir)
    resolved = resolve(tree, max_bytes=config.max_flattened_bytes, max_depth=config.max_include_depth)
    flat = strip_document(resolved.value)
    sections = segment(flat)

    diagnostics = list(resolved.diagnostics)
    entries = []
    for section in sections:
        normalized = normalize_section(section, flat.locate)
        diagnostics.extend(normalized.diagnostics)
        entries.append((section, normalized.value))
    entries, truncated = _apply_budget(entries, config)

    for diagnostic in diagnostics:
        logging.warning(f"{paper_id}: {diagnostic}")
    logging.info(f"{paper_id}: {len(entries)} sections from {len(tree.files)} source files")

    return StructuredDocument(
        paper_id=paper_id,
        entries=tuple(entries),
        entry_file=tree.entry,
        source_file_count=len(tree.files),
        truncated=truncated,
        authors=tuple(extract_authors(flat.text)),
        assets=tree.assets,
        diagnostics=tuple(diagnostics),
    )


class NoteIndex:
    """
    Run-scoped record of papers that already have a note.

    A paper counts as done when its note file exists, when processed.txt in
    the output directory lists it, or when it was claimed earlier in this
    run. Claims and appends to the on-disk log are serialized by one lock so
    concurrent workers never process a paper twice.
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)
        self._lock = threading.Lock()
        self._claimed = set()
        self._recorded = set()
        log_path = self.output_dir / INDEX_FILE
        if log_path.exists():
            with open(log_path, encoding='utf-8') as log:
                for line in log:
                    paper_id = line.split('\t', 1)[0].strip()
                    if paper_id:
                        self._recorded.add(paper_id)

    def has_note(self, paper_id: str) -> bool:
        return note_path(self.output_dir, paper_id).exists()

    def claim(self, paper_id: str) -> bool:
        with self._lock:
            if paper_id in self._claimed or paper_id in self._recorded or self.has_note(paper_id):
                return False
            self._claimed.add(paper_id)
            return True

    def record(self, paper_id: str, path: Path) -> None:
        with self._lock:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with open(self.output_dir / INDEX_FILE, 'a', encoding='utf-8') as log:
                log.write(f"{paper_id}\t{path}\n")
            self._recorded.add(paper_id)


class _Deadline:
    def __init__(self, paper_id: str, seconds: Optional[float]):
        self.paper_id = paper_id
        self.seconds = seconds
        self.expires = time.monotonic() + seconds if seconds else None

    def remaining(self) -> Optional[float]:
        if self.expires is None:
            return None
        return self.expires - time.monotonic()

    def check(self, stage: str) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise PaperTimeout(f"{self.paper_id} exceeded {self.seconds}s before {stage}")


def _with_retries(action: Callable, stage: str, config: Config, deadline: _Deadline,
                  retry_on: Tuple[type, ...]):
    """Run ``action`` with exponential backoff on retryable errors; returns (result, attempts)."""
    attempt = 0
    while True:
        attempt += 1
        deadline.check(stage)
        try:
            return action(), attempt
        except retry_on as e:
            if not getattr(e, 'retryable', False) or attempt > config.retries:
                raise
            delay = config.retry_backoff * (2 ** (attempt - 1))
            remaining = deadline.remaining()
            if remaining is not None and delay >= remaining:
                raise PaperTimeout(f"{deadline.paper_id} ran out of time retrying {stage}: {e}") from e
            logging.warning(f"{deadline.paper_id}: {stage} failed ({e}), retrying in {delay:.1f}s "
                            f"(attempt {attempt}/{config.retries + 1})")
            time.sleep(delay)


def default_collaborators(config: Config, fetch: Optional[Fetcher] = None,
                          generate: Optional[Generator] = None,
                          write: Optional[Writer] = None) -> Tuple[Fetcher, Generator, Writer]:
    """Fill in the arXiv downloader, the LLM note generator and the note writer where not given."""
    if fetch is None:
        def fetch(paper_id: str, timeout: Optional[float] = None) -> Path:
            return download_arxiv_source(paper_id, config.cache_dir, use_cache=config.use_cache,
                                         timeout=min(timeout, 60) if timeout else 60,
                                         check_availability=config.check_availability)
    if generate is None:
        generate = NoteGenerator(LLMClient.from_env(), load_prompt_template(config.prompt_file)).generate
    if write is None:
        write = NoteWriter(config.output_dir).write
    return fetch, generate, write


def process_paper(paper_id: str, config: Optional[Config] = None,
                  fetch: Optional[Fetcher] = None, generate: Optional[Generator] = None,
                  write: Optional[Writer] = None, index: Optional[NoteIndex] = None) -> PaperOutcome:
    """
    Fetch, process, summarize and write one paper.

    A paper whose note already exists is skipped without calling the LLM.
    Fetching and note generation are retried on retryable errors; the whole
    paper must finish within ``config.per_paper_timeout``.

    The timeout is cooperative: it is checked between stages and caps the
    timeout handed to fetch and generate. A collaborator that ignores its
    ``timeout`` argument can run past the deadline; the overrun is only
    noticed at the next stage boundary.

    Returns:
        PaperOutcome; processing errors are recorded on it rather than raised
    """
    config = config or Config()
    index = index or NoteIndex(config.output_dir)

    if not index.claim(paper_id):
        logging.info(f"[Exist]: generated note for {paper_id} exists, skip.")
        return PaperOutcome(paper_id, PaperOutcome.SKIPPED, note_path=note_path(config.output_dir, paper_id))
    fetch, generate, write = default_collaborators(config, fetch, generate, write)

    deadline = _Deadline(paper_id, config.per_paper_timeout)
    document = None
    attempts = 0
    try:
        source_dir, _ = _with_retries(lambda: fetch(paper_id, timeout=deadline.remaining()),
                                      'download', config, deadline, (SourceUnavailable,))
        deadline.check('parsing')
        document = process(source_dir, config, paper_id=paper_id)
        try:
            text, attempts = _with_retries(lambda: generate(document, timeout=deadline.remaining()),
                                           'note generation', config, deadline, (LLMError,))
        except LLMError as e:
            raise NoteGenerationFailed(f"note generation failed for {paper_id}: {e}", cause=e) from e
        deadline.check('writing')
        path = write(paper_id, text)
        index.record(paper_id, path)
    except ProcessingError as e:
        logging.error(f"Error processing {paper_id}: {e.kind.value}: {e}")
        return PaperOutcome(paper_id, PaperOutcome.FAILED, document=document, error=e, attempts=attempts)

    status = PaperOutcome.DEGRADED if document.degraded else PaperOutcome.SUCCEEDED
    logging.info(f"Successfully processed paper: {document.title or paper_id}")
    return PaperOutcome(paper_id, status, document=document, note_path=path, attempts=attempts,
                        diagnostics=list(document.diagnostics))


def run_batch(paper_ids: Iterable[str], concurrency: Optional[int] = None,
              config: Optional[Config] = None, fetch: Optional[Fetcher] = None,
              generate: Optional[Generator] = None, write: Optional[Writer] = None,
              show_progress: bool = True) -> Dict[str, PaperOutcome]:
    """
    Process many papers concurrently; one paper's failure never stops the others.

    Args:
        paper_ids: arXiv ids or abs/pdf URLs, one per paper
        concurrency: Pool width (defaults to config.concurrency)
        config: Pipeline configuration
        fetch, generate, write: Collaborators; the arXiv downloader, the LLM
            note generator and the note writer are used when omitted
        show_progress: Display a tqdm progress bar

    Returns:
        Mapping of paper id to its PaperOutcome, in input order
    """
    config = config or Config()
    workers = max(1, concurrency or config.concurrency)
    outcomes = {}
    ids = []
    order = []
    for entry in paper_ids:
        entry = entry.strip()
        if not entry:
            continue
        try:
            paper_id = parse_paper_id(entry)
        except ProcessingError as e:
            logging.error(f"Error processing {entry}: {e}")
            outcomes[entry] = PaperOutcome(entry, PaperOutcome.FAILED, error=e)
            order.append(entry)
            continue
        if paper_id not in ids:
            ids.append(paper_id)
            order.append(paper_id)

    if ids:
        fetch, generate, write = default_collaborators(config, fetch, generate, write)
        index = NoteIndex(config.output_dir)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_id = {
                executor.submit(process_paper, paper_id, config, fetch, generate, write, index): paper_id
                for paper_id in ids
            }
            completed = as_completed(future_to_id)
            for future in tqdm(completed, total=len(future_to_id), desc="Papers", disable=not show_progress):
                paper_id = future_to_id[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    logging.error(f"Worker exception for {paper_id}: {e}")
                    outcome = PaperOutcome(paper_id, PaperOutcome.FAILED, error=e)
                outcomes[paper_id] = outcome

    return {key: outcomes[key] for key in order}


def summarize_outcomes(outcomes: Dict[str, PaperOutcome]) -> str:
    """Render the per-paper status summary printed at the end of a batch run."""
    counts = {status: 0 for status in (PaperOutcome.SUCCEEDED, PaperOutcome.DEGRADED,
                                       PaperOutcome.FAILED, PaperOutcome.SKIPPED)}
    lines = []
    for paper_id, outcome in outcomes.items():
        counts[outcome.status] += 1
        if outcome.status == PaperOutcome.FAILED:
            error = outcome.error
            kind = error.kind.value if isinstance(error, ProcessingError) else type(error).__name__
            lines.append(f"  [failed] {paper_id}: {kind}: {error}")
        elif outcome.status == PaperOutcome.DEGRADED:
            warnings = "; ".join(str(d) for d in outcome.diagnostics)
            lines.append(f"  [degraded] {paper_id} -> {outcome.note_path} ({warnings})")
        else:
            lines.append(f"  [{outcome.status}] {paper_id} -> {outcome.note_path}")
    header = "Batch summary: " + ", ".join(f"{count} {status}" for status, count in counts.items())
    return "\n".join([header] + lines)
