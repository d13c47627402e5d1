import threading
import time
from dataclasses import replace
from unittest import mock

import pytest

from paper_scan.config import Config
from paper_scan.errors import AuthFailed, ErrorKind, RateLimited, SourceUnavailable
from paper_scan.models import PaperOutcome, SectionKind
from paper_scan.pipeline import (
    INDEX_FILE, NoteIndex, default_collaborators, process, process_paper, run_batch, summarize_outcomes,
)

SCENARIO = (
    "\\documentclass{article}\\title{T}\\begin{document}\\maketitle"
    "\\begin{abstract}A.\\end{abstract}\\section{Intro}Hi $x=1$.\\end{document}"
)
PAPERS = ["2401.00001", "2401.00002", "2401.00003"]


def write_paper(directory, content=SCENARIO, **extra):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "main.tex").write_text(content)
    for name, text in extra.items():
        (directory / f"{name}.tex").write_text(text)
    return directory


class FakeGenerator:
    """Stands in for the LLM; optionally raises the queued errors first."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = []
        self.lock = threading.Lock()

    def __call__(self, document, timeout=None):
        with self.lock:
            self.calls.append(document.paper_id)
            if self.errors:
                raise self.errors.pop(0)
        return f"\\documentclass{{article}}\n% note for {document.paper_id}"


@pytest.fixture
def config(tmp_path):
    return Config(output_dir=tmp_path / "notes", cache_dir=tmp_path / "cache", retry_backoff=0)


@pytest.fixture
def sources(tmp_path):
    """Extracted sources for papers 1 and 3; paper 2's directory is missing."""
    root = tmp_path / "cache"
    write_paper(root / PAPERS[0])
    write_paper(root / PAPERS[2])

    def fetch(paper_id, timeout=None):
        return root / paper_id

    return fetch


def test_process_scenario(tmp_path):
    document = process(write_paper(tmp_path / "paper"))
    assert [s.kind for s in document.sections] == [SectionKind.TITLE, SectionKind.ABSTRACT, SectionKind.HEADING]
    assert document.paper_id == "paper"
    assert document.title == "T"
    assert document.abstract == "A."
    assert document.entry_file == "main.tex"
    assert document.source_file_count == 1
    heading = document.records[2]
    assert heading.narrative_text == "Hi ."
    assert [m.content for m in heading.math] == ["x=1"]
    assert not document.degraded
    assert not document.truncated


def test_process_missing_include_is_degraded(tmp_path):
    paper = write_paper(tmp_path / "paper", SCENARIO.replace("Hi", "\\input{gone}Hi"))
    document = process(paper)
    assert document.degraded
    assert [d.kind for d in document.diagnostics] == [ErrorKind.UNRESOLVED_INCLUDE]


def test_process_strips_comments_before_segmenting(tmp_path):
    content = SCENARIO.replace("\\section{Intro}", "% \\section{Hidden}\n\\section{Intro}")
    document = process(write_paper(tmp_path / "paper", content))
    assert [s.heading for s in document.sections if s.kind == SectionKind.HEADING] == ["Intro"]


def test_process_drop_appendix(tmp_path):
    content = SCENARIO.replace("\\end{document}", "\\appendix\\section{Proofs}p\\end{document}")
    paper = write_paper(tmp_path / "paper", content)
    assert any(s.in_appendix for s in process(paper).sections)

    document = process(paper, Config(drop_appendix=True))
    assert not any(s.in_appendix for s in document.sections)
    assert document.truncated


def test_process_character_budget_keeps_front_matter(tmp_path):
    document = process(write_paper(tmp_path / "paper"), Config(max_document_chars=5))
    assert [s.kind for s in document.sections] == [SectionKind.TITLE, SectionKind.ABSTRACT]
    assert document.truncated


def test_batch_isolates_failures(config, sources):
    generate = FakeGenerator()
    outcomes = run_batch(PAPERS, config=config, fetch=sources, generate=generate, show_progress=False)

    assert list(outcomes) == PAPERS
    assert outcomes[PAPERS[0]].status == PaperOutcome.SUCCEEDED
    assert outcomes[PAPERS[2]].status == PaperOutcome.SUCCEEDED
    failed = outcomes[PAPERS[1]]
    assert failed.status == PaperOutcome.FAILED
    assert failed.error.kind == ErrorKind.MISSING_ENTRY_FILE
    assert failed.result is failed.error
    assert outcomes[PAPERS[0]].result.title == "T"
    assert sorted(generate.calls) == [PAPERS[0], PAPERS[2]]

    note = config.output_dir / PAPERS[0] / f"{PAPERS[0]}.tex"
    assert note.read_text().startswith("\\documentclass")
    assert len((config.output_dir / INDEX_FILE).read_text().splitlines()) == 2


def test_rerun_skips_existing_notes(config, sources):
    run_batch(PAPERS, config=config, fetch=sources, generate=FakeGenerator(), show_progress=False)

    generate = FakeGenerator()
    outcomes = run_batch(PAPERS, config=config, fetch=sources, generate=generate, show_progress=False)
    assert outcomes[PAPERS[0]].status == PaperOutcome.SKIPPED
    assert outcomes[PAPERS[2]].status == PaperOutcome.SKIPPED
    assert outcomes[PAPERS[1]].status == PaperOutcome.FAILED
    assert generate.calls == []


def test_batch_accepts_urls_and_collapses_duplicates(config, sources):
    generate = FakeGenerator()
    entries = [PAPERS[0], f"https://arxiv.org/abs/{PAPERS[0]}", "not a url", ""]
    outcomes = run_batch(entries, config=config, fetch=sources, generate=generate, show_progress=False)
    assert list(outcomes) == [PAPERS[0], "not a url"]
    assert outcomes["not a url"].error.kind == ErrorKind.INVALID_PAPER_ID
    assert generate.calls == [PAPERS[0]]


def test_worker_exception_does_not_abort_batch(config, sources):
    def fetch(paper_id, timeout=None):
        if paper_id == PAPERS[1]:
            raise RuntimeError("disk on fire")
        return sources(paper_id)

    outcomes = run_batch(PAPERS, concurrency=2, config=config, fetch=fetch,
                         generate=FakeGenerator(), show_progress=False)
    assert outcomes[PAPERS[1]].status == PaperOutcome.FAILED
    assert isinstance(outcomes[PAPERS[1]].error, RuntimeError)
    assert outcomes[PAPERS[0]].ok and outcomes[PAPERS[2]].ok


def test_retry_on_rate_limit(config, sources):
    generate = FakeGenerator(errors=[RateLimited("slow down", status_code=429)])
    outcome = process_paper(PAPERS[0], config, fetch=sources, generate=generate)
    assert outcome.status == PaperOutcome.SUCCEEDED
    assert outcome.attempts == 2
    assert generate.calls == [PAPERS[0], PAPERS[0]]


def test_retries_are_bounded(config, sources):
    config.retries = 2
    generate = FakeGenerator(errors=[RateLimited("slow down")] * 5)
    outcome = process_paper(PAPERS[0], config, fetch=sources, generate=generate)
    assert outcome.status == PaperOutcome.FAILED
    assert outcome.error.kind == ErrorKind.NOTE_GENERATION_FAILED
    assert isinstance(outcome.error.cause, RateLimited)
    assert len(generate.calls) == 3


def test_auth_failure_is_not_retried(config, sources):
    generate = FakeGenerator(errors=[AuthFailed("bad key", status_code=401)])
    outcome = process_paper(PAPERS[0], config, fetch=sources, generate=generate)
    assert outcome.status == PaperOutcome.FAILED
    assert outcome.error.kind == ErrorKind.NOTE_GENERATION_FAILED
    assert len(generate.calls) == 1
    assert not (config.output_dir / PAPERS[0] / f"{PAPERS[0]}.tex").exists()


def test_fetch_retried_when_retryable(config, sources):
    calls = []

    def fetch(paper_id, timeout=None):
        calls.append(paper_id)
        if len(calls) == 1:
            raise SourceUnavailable("connection reset", retryable=True)
        return sources(paper_id)

    outcome = process_paper(PAPERS[0], config, fetch=fetch, generate=FakeGenerator())
    assert outcome.status == PaperOutcome.SUCCEEDED
    assert len(calls) == 2


def test_pdf_only_source_is_not_retried(config):
    calls = []

    def fetch(paper_id, timeout=None):
        calls.append(paper_id)
        raise SourceUnavailable("PDF only")

    outcome = process_paper(PAPERS[0], config, fetch=fetch, generate=FakeGenerator())
    assert outcome.error.kind == ErrorKind.SOURCE_UNAVAILABLE
    assert len(calls) == 1


def test_per_paper_timeout(config, sources):
    config.per_paper_timeout = 0.05

    def slow_fetch(paper_id, timeout=None):
        time.sleep(0.1)
        return sources(paper_id)

    generate = FakeGenerator()
    outcome = process_paper(PAPERS[0], config, fetch=slow_fetch, generate=generate)
    assert outcome.status == PaperOutcome.FAILED
    assert outcome.error.kind == ErrorKind.TIMEOUT
    assert generate.calls == []


def test_degraded_outcome(config, tmp_path):
    paper = write_paper(tmp_path / "broken", SCENARIO.replace("$x=1$", "$x=1"))
    outcome = process_paper(PAPERS[0], config, fetch=lambda paper_id, timeout=None: paper,
                            generate=FakeGenerator())
    assert outcome.status == PaperOutcome.DEGRADED
    assert outcome.ok
    assert [d.kind for d in outcome.diagnostics] == [ErrorKind.MALFORMED_MATH]


def test_note_index_claims_once(tmp_path):
    index = NoteIndex(tmp_path)
    assert index.claim("2401.00001")
    assert not index.claim("2401.00001")
    assert index.claim("2401.00002")


def test_note_index_reads_processed_log(tmp_path):
    (tmp_path / INDEX_FILE).write_text("2401.00001\tsomewhere\n\n")
    index = NoteIndex(tmp_path)
    assert not index.claim("2401.00001")
    assert index.claim("2401.00002")


def test_batch_skips_papers_in_processed_log(config, sources):
    config.output_dir.mkdir(parents=True)
    (config.output_dir / INDEX_FILE).write_text(f"{PAPERS[0]}\told/path.tex\n")
    generate = FakeGenerator()
    outcomes = run_batch([PAPERS[0], PAPERS[2]], config=config, fetch=sources, generate=generate,
                         show_progress=False)
    assert outcomes[PAPERS[0]].status == PaperOutcome.SKIPPED
    assert outcomes[PAPERS[2]].status == PaperOutcome.SUCCEEDED
    assert generate.calls == [PAPERS[2]]


def test_default_fetch_passes_source_check(config):
    config = replace(config, check_availability=True)
    with mock.patch("paper_scan.pipeline.download_arxiv_source") as download:
        fetch, _, _ = default_collaborators(config, generate=FakeGenerator(), write=lambda *args: None)
        fetch("2401.00001", timeout=10)
    assert download.call_args.kwargs["check_availability"] is True
    assert download.call_args.kwargs["timeout"] == 10


def test_summarize_outcomes(config, sources):
    outcomes = run_batch(PAPERS, config=config, fetch=sources, generate=FakeGenerator(), show_progress=False)
    summary = summarize_outcomes(outcomes)
    assert summary.splitlines()[0] == "Batch summary: 2 succeeded, 0 degraded, 1 failed, 0 skipped"
    assert f"[failed] {PAPERS[1]}: MissingEntryFile" in summary
