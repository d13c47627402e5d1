import logging
from typing import List, Optional

import requests

from .config import LLMConfig
from .errors import AuthFailed, LLMError, LLMTimeout, MalformedResponse, RateLimited


class LLMClient:
    """Minimal client for an OpenAI-compatible /chat/completions endpoint."""

    def __init__(self, config: Optional[LLMConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or LLMConfig.from_env()
        self.session = session or requests.Session()

    @classmethod
    def from_env(cls) -> 'LLMClient':
        config = LLMConfig.from_env()
        if not config.api_key:
            raise AuthFailed("OPENAI_API_KEY must be set in the environment or a .env file")
        return cls(config)

    def _payload(self, system_prompt: str, user_content: str) -> dict:
        payload = {
            'model': self.config.model,
            'messages': [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_content},
            ],
            'temperature': self.config.temperature,
        }
        if self.config.max_tokens is not None:
            payload['max_tokens'] = self.config.max_tokens
        return payload

    def generate(self, system_prompt: str, user_content: str, timeout: Optional[float] = None) -> str:
        """
        Send one chat completion request and return the first choice's text.

        Raises:
            RateLimited: HTTP 429
            AuthFailed: HTTP 401/403
            LLMTimeout: the request timed out
            MalformedResponse: the body is not a usable completion
            LLMError: any other failure (retryable for 5xx and connection errors)
        """
        url = f"{self.config.base_url}/chat/completions"
        headers = {
            'Authorization': f"Bearer {self.config.api_key}",
            'Content-Type': 'application/json',
        }
        request_timeout = self.config.request_timeout if timeout is None else min(timeout, self.config.request_timeout)
        logging.info(f"Requesting completion from {self.config.model}")
        try:
            response = self.session.post(
                url, headers=headers, json=self._payload(system_prompt, user_content), timeout=request_timeout
            )
        except requests.exceptions.Timeout as e:
            raise LLMTimeout(f"Completion request timed out after {request_timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise LLMError(f"Completion request failed: {e}", retryable=True) from e

        status = response.status_code
        if status == 429:
            raise RateLimited(f"API rate limit hit: {response.text[:200]}", status_code=status)
        if status in (401, 403):
            raise AuthFailed(f"API rejected credentials: {response.text[:200]}", status_code=status)
        if status >= 400:
            raise LLMError(f"API request failed ({status}): {response.text[:200]}",
                           status_code=status, retryable=status >= 500)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponse("API returned a non-JSON body") from e
        return _first_choice(data)


def _first_choice(data: dict) -> str:
    choices: List[dict] = []
    if isinstance(data, dict):
        choices = data.get('choices') or []
    if not choices or not isinstance(choices[0], dict):
        raise MalformedResponse("No response from API")
    message = choices[0].get('message') or {}
    content = message.get('content')
    if not isinstance(content, str) or not content.strip():
        raise MalformedResponse("API response has no message content")
    return content.strip()
