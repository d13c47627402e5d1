import logging
import shutil
from collections import Counter
from pathlib import Path
from typing import Optional, Union

from .arxiv import paper_dir_name
from .errors import LLMError
from .llm_client import LLMClient
from .models import SectionKind, StructuredDocument

DEFAULT_PROMPT = (
    "You are an expert research assistant. Read the structured content of an arXiv paper "
    "and write a complete, compilable LaTeX note summarizing its motivation, method, key "
    "equations, experiments and limitations. Return only LaTeX source."
)


def load_prompt_template(path: Optional[Union[str, Path]] = None) -> str:
    """Read the system prompt from ``path``; fall back to the built-in prompt if it is missing."""
    if path is not None:
        prompt_path = Path(path)
        if prompt_path.exists():
            return prompt_path.read_text(encoding='utf-8')
        logging.warning(f"Prompt file {prompt_path} not found, using built-in prompt")
    return DEFAULT_PROMPT


def format_document(doc: StructuredDocument, max_citations: int = 20) -> str:
    """Render a StructuredDocument as the user message of the note prompt."""
    lines = [f"Paper ID: {doc.paper_id}", f"Title: {doc.title or 'Untitled'}"]
    if doc.authors:
        lines.append(f"Authors: {', '.join(doc.authors)}")
    lines.append("")
    if doc.abstract:
        lines += ["Abstract:", doc.abstract, ""]

    lines.append("Sections:")
    for section, record in doc:
        if section.kind in (SectionKind.TITLE, SectionKind.ABSTRACT):
            continue
        if section.kind == SectionKind.BIBLIOGRAPHY:
            lines.append(f"# References ({len(record.citations)} entries)")
            continue
        if section.heading:
            prefix = '#' * (section.level or 1)
            tag = " [appendix]" if section.kind == SectionKind.APPENDIX else ""
            lines.append(f"{prefix} {section.heading}{tag}")
        if record.narrative_text:
            lines.append(record.narrative_text)
        for caption in record.captions:
            label = f" ({caption.label})" if caption.label else ""
            lines.append(f"[Caption{label}] {caption.text}")
        lines.append("")

    equations = doc.equations
    if equations:
        lines.append("Key equations:")
        lines += [f"Equation {i}: {eq}" for i, eq in enumerate(equations, start=1)]
        lines.append("")

    citations = Counter(doc.citations)
    if citations:
        top = ", ".join(f"{key} ({count})" for key, count in citations.most_common(max_citations))
        lines += ["Most cited references:", top, ""]

    if doc.assets:
        lines.append("Image files:")
        lines += [f"- Image {i}: {name}" for i, name in enumerate(doc.assets, start=1)]
        lines.append("")

    if doc.truncated:
        lines.append("(Content truncated to fit the size budget.)")
    return "\n".join(lines).strip() + "\n"


def post_process_latex(content: str) -> str:
    """Strip a Markdown code fence wrapped around the generated LaTeX."""
    lines = content.strip().splitlines()
    if lines and lines[0].strip().startswith("```"):
        lines = lines[1:]
    if lines and lines[-1].strip() == "```":
        lines = lines[:-1]
    return "\n".join(lines).strip()


class NoteGenerator:
    """Turns a StructuredDocument into LaTeX note text through the LLM client."""

    def __init__(self, client: LLMClient, system_prompt: str = DEFAULT_PROMPT):
        self.client = client
        self.system_prompt = system_prompt

    def generate(self, doc: StructuredDocument, timeout: Optional[float] = None) -> str:
        content = self.client.generate(self.system_prompt, format_document(doc), timeout=timeout)
        note = post_process_latex(content)
        if not note:
            raise LLMError("model returned an empty note")
        return note


def note_path(output_dir: Union[str, Path], paper_id: str) -> Path:
    name = paper_dir_name(paper_id)
    return Path(output_dir) / name / f"{name}.tex"


class NoteWriter:
    """Persists generated notes as {output_dir}/{paper_id}/{paper_id}.tex."""

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)

    def write(self, paper_id: str, text: str) -> Path:
        path = note_path(self.output_dir, paper_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        # A note file exists only once it is complete.
        tmp_path = path.with_suffix('.tex.part')
        tmp_path.write_text(text, encoding='utf-8')
        tmp_path.replace(path)
        logging.info(f"Generated note saved to: {path}")
        return path


def collect_pdfs(source: Union[str, Path] = 'tex', destination: Union[str, Path] = 'pdfs') -> int:
    """
    Copy compiled note PDFs from each paper directory under ``source`` into ``destination``.

    Returns:
        Number of PDF files copied

    Raises:
        FileNotFoundError: if ``source`` does not exist
    """
    source_dir = Path(source)
    dest_dir = Path(destination)
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory '{source_dir}' does not exist")
    dest_dir.mkdir(parents=True, exist_ok=True)

    count = 0
    for paper_dir in sorted(p for p in source_dir.iterdir() if p.is_dir()):
        for pdf in sorted(paper_dir.iterdir()):
            if pdf.is_file() and pdf.suffix.lower() == '.pdf':
                shutil.copy2(pdf, dest_dir / pdf.name)
                logging.info(f"Copied: {pdf} -> {dest_dir / pdf.name}")
                count += 1
    if count == 0:
        logging.info(f"No PDF files found in '{source_dir}' directory")
    return count
