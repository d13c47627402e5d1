import gzip
import io
import logging
import re
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Optional, Union

import requests

from .config import get_default_cache_dir
from .errors import InvalidPaperId, SourceUnavailable

NEW_STYLE_ID = r'\d{4}\.\d{4,5}(?:v\d+)?'
OLD_STYLE_ID = r'[a-z][a-z.-]*/\d{7}(?:v\d+)?'
PAPER_ID_RE = re.compile(rf'^(?:{NEW_STYLE_ID}|{OLD_STYLE_ID})$')
ARXIV_URL_RE = re.compile(
    rf'arxiv\.org/(?:abs|pdf|src|e-print|format)/({NEW_STYLE_ID}|{OLD_STYLE_ID})(?:\.pdf)?/?$'
)

HEADERS = {
    'User-Agent': 'Mozilla/5.0'
}


def parse_paper_id(url_or_id: str) -> str:
    """
    Extract the paper id from an arXiv abs/pdf URL or a bare id.

    Raises:
        InvalidPaperId: if neither form matches
    """
    candidate = url_or_id.strip()
    if PAPER_ID_RE.match(candidate):
        return candidate
    match = ARXIV_URL_RE.search(candidate.split('?', 1)[0].split('#', 1)[0])
    if match:
        return match.group(1)
    raise InvalidPaperId(f"Invalid arXiv URL format: {url_or_id}")


def paper_dir_name(paper_id: str) -> str:
    """Old-style ids contain a slash; keep them to a single path component."""
    return paper_id.replace('/', '_')


def check_source_available(arxiv_id: str, timeout: float = 30) -> bool:
    """
    Ask the arXiv format page whether a paper was submitted with TeX source.

    The page offers a "Download source" link only when an e-print archive
    exists. Any request failure counts as unavailable.
    """
    with requests.Session() as session:
        session.mount('https://', requests.adapters.HTTPAdapter(max_retries=3))
        try:
            response = session.get(f'https://arxiv.org/format/{arxiv_id}', headers=HEADERS,
                                   timeout=(5, timeout))
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logging.error(f"Could not read the format page for {arxiv_id}: {e}")
            return False
    available = 'Download source' in response.text
    if not available:
        logging.warning(f"No TeX source listed for {arxiv_id}")
    return available


def _safe_members(tar: tarfile.TarFile, directory: Path):
    root = directory.resolve()
    for member in tar.getmembers():
        target = (directory / member.name).resolve()
        if root not in target.parents and target != root:
            logging.warning(f"Skipping archive member outside target directory: {member.name}")
            continue
        if member.issym() or member.islnk() or member.isdev():
            continue
        yield member


def extract_archive(payload: bytes, directory: Path, paper_id: str) -> None:
    """
    Unpack an arXiv e-print payload into ``directory``.

    The e-print endpoint serves a gzipped tarball for multi-file submissions,
    a gzipped single .tex file for one-file submissions, occasionally a zip,
    and a PDF when no source was submitted.

    Raises:
        SourceUnavailable: for PDF-only submissions or unreadable payloads
    """
    if payload.startswith(b'%PDF'):
        raise SourceUnavailable(f"TeX source files not available for {paper_id} (PDF only)")

    directory.mkdir(parents=True, exist_ok=True)
    buffer = io.BytesIO(payload)
    if zipfile.is_zipfile(buffer):
        with zipfile.ZipFile(buffer) as archive:
            for name in archive.namelist():
                target = (directory / name).resolve()
                if directory.resolve() in target.parents:
                    archive.extract(name, directory)
        return

    buffer.seek(0)
    try:
        with tarfile.open(fileobj=buffer, mode='r:*') as tar:
            extra = {'filter': 'data'} if hasattr(tarfile, 'data_filter') else {}
            tar.extractall(path=directory, members=list(_safe_members(tar, directory)), **extra)
        return
    except tarfile.ReadError:
        pass

    try:
        content = gzip.decompress(payload)
    except OSError:
        content = payload
    if content.startswith(b'%PDF'):
        raise SourceUnavailable(f"TeX source files not available for {paper_id} (PDF only)")
    (directory / 'main.tex').write_bytes(content)


def download_arxiv_source(arxiv_id: str, cache_dir: Optional[Union[str, Path]] = None,
                          use_cache: bool = False, timeout: float = 30,
                          check_availability: bool = False) -> Path:
    """
    Download and extract source files from arXiv.

    Args:
        arxiv_id: The arXiv ID of the paper
        cache_dir: Custom directory to store downloaded files
        use_cache: Whether to use cached files if they exist (default: False)
        timeout: Read timeout for the download in seconds
        check_availability: Consult the format page before downloading

    Returns:
        Path of the directory holding the extracted source tree

    Raises:
        SourceUnavailable: if the source cannot be fetched; network failures and
            server errors are marked retryable
    """
    base_dir = Path(cache_dir) if cache_dir else get_default_cache_dir()
    directory = base_dir / paper_dir_name(arxiv_id)
    if use_cache and directory.exists():
        logging.info(f"Directory {directory} already exists, using cached version.")
        return directory

    if check_availability and not check_source_available(arxiv_id, timeout):
        raise SourceUnavailable(f"TeX source files not available for {arxiv_id}")

    # Always use latest version unless the id pins one
    url = f'https://arxiv.org/e-print/{arxiv_id}'
    logging.info(f"Downloading source from {url}")
    try:
        response = requests.get(url, headers=HEADERS, timeout=(5, timeout))
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        retryable = status is None or status >= 500 or status == 429
        raise SourceUnavailable(f"Error downloading source for {arxiv_id}: {e}", retryable=retryable) from e
    except requests.exceptions.RequestException as e:
        raise SourceUnavailable(f"Error downloading source for {arxiv_id}: {e}", retryable=True) from e

    # Clean up existing directory before extracting a fresh copy
    if directory.exists():
        shutil.rmtree(directory)
    try:
        extract_archive(response.content, directory, arxiv_id)
    except (SourceUnavailable, OSError, zipfile.BadZipFile) as e:
        if directory.exists():
            shutil.rmtree(directory)  # Clean up failed download
        if isinstance(e, SourceUnavailable):
            raise
        raise SourceUnavailable(f"Error extracting source for {arxiv_id}: {e}") from e

    logging.info(f"Source files downloaded and extracted to {directory}/")
    return directory
