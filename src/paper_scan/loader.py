import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Mapping, Tuple, Union

from .errors import MissingEntryFile
from .latex import in_comment
from .models import SourceTree

TEXT_EXTENSIONS = {'.tex', '.ltx', '.bbl', '.bib', '.sty', '.cls', '.bst', '.tikz', '.pgf', '.txt'}
ASSET_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.pdf', '.eps', '.gif', '.svg'}
CONVENTIONAL_MAIN_NAMES = ('paper.tex', 'article.tex', 'ms.tex', 'manuscript.tex')

DOCUMENTCLASS_RE = re.compile(r'\\document(?:class|style)\b')


def decode_source(data: bytes) -> str:
    """Decode a source file, falling back to Latin-1 for legacy encodings."""
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        return data.decode('latin-1')


def declares_document_class(content: str) -> bool:
    """True if a non-commented line contains \\documentclass or \\documentstyle."""
    return any(not in_comment(content, match.start()) for match in DOCUMENTCLASS_RE.finditer(content))


def find_main_tex(files: Mapping[str, str]) -> str:
    """
    Choose the entry file of a source bundle.

    A file named main.tex wins (root-level first). Otherwise the unique .tex
    file declaring a document class is used; if several do, a conventional
    manuscript name breaks the tie.

    Raises:
        MissingEntryFile: if no single entry file can be chosen
    """
    tex_files = sorted(path for path in files if path.endswith('.tex'))
    if not tex_files:
        raise MissingEntryFile("no .tex files in source tree")

    if 'main.tex' in files:
        return 'main.tex'
    nested_main = [path for path in tex_files if path.rsplit('/', 1)[-1] == 'main.tex']
    if len(nested_main) == 1:
        return nested_main[0]

    candidates = [path for path in tex_files if declares_document_class(files[path])]
    if len(candidates) == 1:
        return candidates[0]
    if not candidates:
        raise MissingEntryFile("no .tex file declares \\documentclass", candidates=tex_files)

    conventional = [path for path in candidates if path.rsplit('/', 1)[-1].lower() in CONVENTIONAL_MAIN_NAMES]
    if len(conventional) == 1:
        return conventional[0]
    raise MissingEntryFile(
        f"ambiguous entry file, {len(candidates)} files declare \\documentclass: {', '.join(candidates)}",
        candidates=candidates,
    )


def scan_directory(directory: Path) -> Tuple[Dict[str, str], List[str]]:
    """Read every text-like file under ``directory`` and list image assets."""
    files = {}
    assets = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for file_name in sorted(filenames):
            path = Path(dirpath) / file_name
            relative = path.relative_to(directory).as_posix()
            suffix = path.suffix.lower()
            if suffix in ASSET_EXTENSIONS:
                assets.append(relative)
            elif suffix in TEXT_EXTENSIONS:
                try:
                    files[relative] = decode_source(path.read_bytes())
                except OSError as e:
                    logging.warning(f"Could not read file {relative}: {e}")
    return files, assets


def load_source_tree(paper_dir: Union[str, Path]) -> SourceTree:
    """
    Load a paper's extracted source directory.

    Args:
        paper_dir: Directory produced by the archive extractor

    Returns:
        SourceTree with all text files and the chosen entry file

    Raises:
        MissingEntryFile: if the directory is missing or has no usable entry file
    """
    directory = Path(paper_dir)
    if not directory.is_dir():
        raise MissingEntryFile(f"source directory {directory} does not exist")

    files, assets = scan_directory(directory)
    entry = find_main_tex(files)
    logging.info(f"Using {entry} as entry file ({len(files)} source files, {len(assets)} assets)")
    return SourceTree(files=files, entry=entry, root=directory, assets=tuple(assets))
