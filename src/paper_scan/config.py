"""
Configuration for paper-scan.

Values come from the environment (a ``.env`` file is loaded if present) and
can be overridden by command-line flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .resolver import DEFAULT_MAX_FLATTENED_BYTES, DEFAULT_MAX_INCLUDE_DEPTH

load_dotenv()


def get_default_cache_dir() -> Path:
    """Get the default cache directory for downloaded files."""
    # Use standard OS-specific cache directory
    if os.name == 'nt':  # Windows
        base_dir = Path(os.environ.get('LOCALAPPDATA', '~'))
    else:  # Unix/Linux/MacOS
        base_dir = Path(os.environ.get('XDG_CACHE_HOME', '~/.cache'))

    cache_dir = base_dir.expanduser() / 'paper-scan'
    return cache_dir


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


@dataclass
class LLMConfig:
    """Settings for the OpenAI-compatible chat completion endpoint."""
    api_key: str = ''
    base_url: str = 'https://api.openai.com/v1'
    model: str = 'gpt-4o-mini'
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    request_timeout: float = 120.0

    @classmethod
    def from_env(cls) -> 'LLMConfig':
        max_tokens = os.environ.get('OPENAI_MAX_TOKENS')
        return cls(
            api_key=os.environ.get('OPENAI_API_KEY', ''),
            base_url=os.environ.get('OPENAI_BASE_URL', cls.base_url).rstrip('/'),
            model=os.environ.get('OPENAI_MODEL', cls.model),
            temperature=_env_float('OPENAI_TEMPERATURE', cls.temperature),
            max_tokens=int(max_tokens) if max_tokens else None,
            request_timeout=_env_float('OPENAI_TIMEOUT', cls.request_timeout),
        )


@dataclass
class Config:
    """
    Pipeline knobs.

    max_flattened_bytes caps include expansion, per_paper_timeout aborts a
    stuck paper (download + parse + LLM call) and concurrency is the batch
    pool width.
    """
    max_flattened_bytes: int = DEFAULT_MAX_FLATTENED_BYTES
    max_include_depth: int = DEFAULT_MAX_INCLUDE_DEPTH
    max_document_chars: Optional[int] = 200_000
    per_paper_timeout: float = 600.0
    concurrency: int = 3
    retries: int = 3
    retry_backoff: float = 2.0
    drop_appendix: bool = False
    output_dir: Path = Path('tex')
    cache_dir: Path = field(default_factory=get_default_cache_dir)
    use_cache: bool = True
    check_availability: bool = False
    prompt_file: Path = Path('prompts.txt')

    @classmethod
    def from_env(cls) -> 'Config':
        max_chars = os.environ.get('PAPER_SCAN_MAX_DOCUMENT_CHARS')
        cache_dir = os.environ.get('PAPER_SCAN_CACHE_DIR')
        return cls(
            max_flattened_bytes=_env_int('PAPER_SCAN_MAX_FLATTENED_BYTES', DEFAULT_MAX_FLATTENED_BYTES),
            max_include_depth=_env_int('PAPER_SCAN_MAX_INCLUDE_DEPTH', DEFAULT_MAX_INCLUDE_DEPTH),
            max_document_chars=int(max_chars) if max_chars else cls.max_document_chars,
            per_paper_timeout=_env_float('PAPER_SCAN_TIMEOUT', cls.per_paper_timeout),
            concurrency=_env_int('PAPER_SCAN_CONCURRENCY', cls.concurrency),
            retries=_env_int('PAPER_SCAN_RETRIES', cls.retries),
            retry_backoff=_env_float('PAPER_SCAN_BACKOFF', cls.retry_backoff),
            output_dir=Path(os.environ.get('PAPER_SCAN_OUTPUT_DIR', 'tex')),
            cache_dir=Path(cache_dir) if cache_dir else get_default_cache_dir(),
            check_availability=os.environ.get('PAPER_SCAN_CHECK_SOURCE', '').lower() in ('1', 'true', 'yes'),
            prompt_file=Path(os.environ.get('PAPER_SCAN_PROMPT_FILE', 'prompts.txt')),
        )
