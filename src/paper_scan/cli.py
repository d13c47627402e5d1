import argparse
import json
import logging
import sys
from dataclasses import asdict, replace
from pathlib import Path

from .arxiv import parse_paper_id
from .config import Config, get_default_cache_dir
from .errors import LLMError, ProcessingError
from .models import PaperOutcome
from .notes import collect_pdfs, format_document
from .pipeline import process, process_paper, run_batch, summarize_outcomes

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def _add_pipeline_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-appendix",
        action="store_true",
        help="Drop the appendix sections before generating the note"
    )
    parser.add_argument(
        "--max-bytes",
        type=int,
        default=None,
        help="Maximum size of the flattened LaTeX source in bytes"
    )


def _add_note_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--cache-dir",
        type=str,
        help=f"Custom directory to store downloaded files (default: {get_default_cache_dir()})",
        default=None
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        help="Directory for generated notes (default: tex)",
        default=None
    )
    parser.add_argument(
        "--prompt",
        type=str,
        help="Prompt template file (default: prompts.txt)",
        default=None
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Per-paper timeout in seconds covering download, parsing and the LLM call",
        default=None
    )
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Download the source again even if a cached copy exists"
    )
    parser.add_argument(
        "--check-source",
        action="store_true",
        help="Check the arXiv format page for TeX source before downloading"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="paper-scan",
        description="Generate structured LaTeX notes from arXiv papers."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    single = subparsers.add_parser("single", help="Process a single arXiv paper URL")
    single.add_argument("url", help="arXiv paper URL or ID (e.g. https://arxiv.org/abs/2401.08027)")
    _add_pipeline_options(single)
    _add_note_options(single)

    batch = subparsers.add_parser("batch", help="Process multiple arXiv paper URLs from a file")
    batch.add_argument("file_path", help="Path to file containing URLs (one per line)")
    batch.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of papers processed at the same time (default: 3)"
    )
    _add_pipeline_options(batch)
    _add_note_options(batch)

    scan = subparsers.add_parser("scan", help="Process a local folder of TeX files without calling the LLM")
    scan.add_argument("folder", help="Path to a local folder containing TeX files")
    scan.add_argument("--json", action="store_true", help="Print the structured document as JSON")
    _add_pipeline_options(scan)

    collect = subparsers.add_parser("collect-pdf", help="Collect PDF files from tex folder to pdfs folder")
    collect.add_argument("-s", "--source", default="tex", help="Source directory (default: tex)")
    collect.add_argument("-d", "--destination", default="pdfs", help="Destination directory (default: pdfs)")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    """Apply command-line overrides on top of the environment configuration."""
    config = Config.from_env()
    overrides = {}
    if getattr(args, "no_appendix", False):
        overrides["drop_appendix"] = True
    if getattr(args, "max_bytes", None):
        overrides["max_flattened_bytes"] = args.max_bytes
    if getattr(args, "cache_dir", None):
        overrides["cache_dir"] = Path(args.cache_dir)
    if getattr(args, "output_dir", None):
        overrides["output_dir"] = Path(args.output_dir)
    if getattr(args, "prompt", None):
        overrides["prompt_file"] = Path(args.prompt)
    if getattr(args, "timeout", None):
        overrides["per_paper_timeout"] = args.timeout
    if getattr(args, "no_cache", False):
        overrides["use_cache"] = False
    if getattr(args, "check_source", False):
        overrides["check_availability"] = True
    if getattr(args, "concurrency", None):
        overrides["concurrency"] = args.concurrency
    return replace(config, **overrides)


def _fail(error: Exception) -> int:
    kind = error.kind.value if isinstance(error, ProcessingError) else type(error).__name__
    print(f"Error: {kind}: {error}", file=sys.stderr)
    return 1


def run_single(args: argparse.Namespace, config: Config) -> int:
    try:
        paper_id = parse_paper_id(args.url)
        outcome = process_paper(paper_id, config)
    except (ProcessingError, LLMError) as e:
        return _fail(e)
    if outcome.status == PaperOutcome.FAILED:
        return _fail(outcome.error)
    if outcome.status == PaperOutcome.SKIPPED:
        print("[Exist]: generated note existed, skip.")
    for diagnostic in outcome.diagnostics:
        print(f"Warning: {diagnostic}", file=sys.stderr)
    if outcome.note_path:
        print(f"Generated note saved to: {outcome.note_path}")
    return 0


def run_batch_file(args: argparse.Namespace, config: Config) -> int:
    with open(args.file_path, 'r', encoding='utf-8') as f:
        entries = [line.strip() for line in f if line.strip()]
    try:
        outcomes = run_batch(entries, config=config)
    except LLMError as e:
        return _fail(e)
    print(summarize_outcomes(outcomes))
    return 0 if all(outcome.ok for outcome in outcomes.values()) else 1


def run_scan(args: argparse.Namespace, config: Config) -> int:
    try:
        document = process(args.folder, config)
    except ProcessingError as e:
        return _fail(e)
    if args.json:
        print(json.dumps(asdict(document), indent=2, ensure_ascii=False))
    else:
        print(format_document(document))
    for diagnostic in document.diagnostics:
        print(f"Warning: {diagnostic}", file=sys.stderr)
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "collect-pdf":
        try:
            count = collect_pdfs(args.source, args.destination)
        except FileNotFoundError as e:
            parser.error(str(e))
        print(f"Successfully collected {count} PDF file(s)")
        return 0

    config = config_from_args(args)
    if args.command == "single":
        return run_single(args, config)
    if args.command == "batch":
        return run_batch_file(args, config)
    return run_scan(args, config)


if __name__ == "__main__":
    sys.exit(main())
