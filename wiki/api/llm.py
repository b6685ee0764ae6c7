import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional

import requests

from wiki.api.config import LLM_REQUEST_TIMEOUT_SECONDS, OLLAMA_HOST, OLLAMA_MODEL
from wiki.api.errors import UpstreamResponseError, UpstreamTimeoutError, UpstreamUnavailableError

logger = logging.getLogger(__name__)


class OllamaClient:
    """
    Minimal client for an Ollama-compatible /api/chat endpoint.

    Every failure mode is mapped onto the upstream error family:
    connection refused -> UpstreamUnavailableError, socket timeout or missed
    deadline -> UpstreamTimeoutError, unusable body -> UpstreamResponseError.
    """

    def __init__(
        self,
        host: str = OLLAMA_HOST,
        model: str = OLLAMA_MODEL,
        request_timeout: float = LLM_REQUEST_TIMEOUT_SECONDS,
        max_workers: int = 4,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.request_timeout = request_timeout
        self._session = requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="llm")

    def _post_chat(self, messages: List[Dict[str, str]], model: str) -> str:
        try:
            resp = self._session.post(
                f"{self.host}/api/chat",
                json={"model": model, "messages": messages, "stream": False},
                timeout=self.request_timeout,
            )
        except requests.Timeout as exc:
            raise UpstreamTimeoutError("The language model timed out", details=str(exc)) from exc
        except requests.ConnectionError as exc:
            raise UpstreamUnavailableError(
                f"Could not connect to the language model at {self.host}", details=str(exc)
            ) from exc

        if resp.status_code != 200:
            raise UpstreamUnavailableError(
                f"Language model returned HTTP {resp.status_code}", details=resp.text[:500]
            )
        try:
            content = resp.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamResponseError("Malformed response from the language model") from exc
        if not isinstance(content, str):
            raise UpstreamResponseError("Malformed response from the language model")
        return content

    # PUBLIC_INTERFACE
    def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> str:
        """
        Send a non-streaming chat request and return the assistant text.

        With a deadline (seconds) the wait is bounded; when it passes the
        caller gets UpstreamTimeoutError while the request itself is left
        to finish on the worker thread.
        """
        model = model or self.model
        if deadline is None:
            return self._post_chat(messages, model)

        future = self._executor.submit(self._post_chat, messages, model)
        try:
            return future.result(timeout=deadline)
        except FutureTimeoutError as exc:
            logger.warning("Language model did not answer within %ss", deadline)
            raise UpstreamTimeoutError(f"No response within {deadline:g}s") from exc

    def complete(self, prompt: str, model: Optional[str] = None) -> str:
        """Single-turn convenience wrapper around chat()."""
        return self.chat([{"role": "user", "content": prompt}], model=model)

    def close(self):
        self._executor.shutdown(wait=False)
        self._session.close()
