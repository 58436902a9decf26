"""
LLM_CLIENT
==========

Streaming chat client for the language-model backend.

Every stage adapter talks to the backend through this one class. The client
sends a role-tagged message list and a model name, reads the streamed
response line by line, and yields text deltas as they arrive. Callers
accumulate the deltas into the full text.

Providers
---------
``ollama`` (offline mode)
    POST ``{base}/api/chat`` with ``stream: true``. The body is NDJSON: one
    JSON object per line, delta text in ``message.content``, ``done: true``
    on the last line. Each base URL is tried in turn until one connects
    (``127.0.0.1`` first, then ``localhost``).

``openai`` (online mode)
    POST ``{base}/v1/chat/completions`` with ``stream: true``. The body is
    server-sent events: ``data: {...}`` lines with delta text in
    ``choices[0].delta.content``, terminated by ``data: [DONE]``.

Failure Semantics
-----------------
Everything that goes wrong is raised as ``LLMClientError``: connection
errors, timeouts, non-2xx status codes, an ``error`` field inside a
fragment, and streams where not a single line could be parsed. Single
unparsable lines inside an otherwise healthy stream are skipped.

Usage::

    client = LLMClient(provider="ollama")
    messages = [{"role": "system", "content": "..."},
                {"role": "user", "content": "..."}]
    text = client.chat(messages, model="llama3.1:8b")
"""

import json
import logging
from typing import Dict, Iterator, List, Optional

import requests

from ..config.loader import DEFAULT_OLLAMA_URLS, DEFAULT_OPENAI_URL, LLMConfig

logger = logging.getLogger(__name__)


class LLMClientError(Exception):
    """Raised when the language-model backend cannot produce a response."""


class LLMClient:
    """Text-in/text-out client over a streaming HTTP interface."""

    USER_AGENT = "CycleCore/1.0 (Python)"

    def __init__(
        self,
        provider: str = "ollama",
        base_urls: Optional[List[str]] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        temperature: float = 0.7,
    ):
        """
        Initialize the client.

        Args:
            provider: "ollama" or "openai"
            base_urls: Backend base URLs, tried in order
            api_key: Bearer key (openai only)
            timeout: Connect/read timeout in seconds
            temperature: Default sampling temperature (a request may override it)
        """
        if provider not in ("ollama", "openai"):
            raise ValueError(f"Unsupported provider: {provider}")
        self.provider = provider
        if base_urls:
            self.base_urls = [u.rstrip("/") for u in base_urls]
        elif provider == "ollama":
            self.base_urls = list(DEFAULT_OLLAMA_URLS)
        else:
            self.base_urls = [DEFAULT_OPENAI_URL]
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature

    @classmethod
    def from_config(cls, config: LLMConfig) -> "LLMClient":
        return cls(
            provider=config.provider,
            base_urls=config.base_urls,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            temperature=config.temperature,
        )

    # ========================================================================
    # PUBLIC API
    # ========================================================================

    def stream_chat(
        self, messages: List[Dict[str, str]], model: str, temperature: Optional[float] = None,
    ) -> Iterator[str]:
        """
        Stream a chat completion.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": str}]
            model: Model identifier
            temperature: Overrides the client temperature for this request

        Yields:
            Text deltas in arrival order

        Raises:
            LLMClientError: On any backend failure (see module docstring)
        """
        response = self._open_stream(messages, model, temperature)
        with response:
            yield from self._iter_deltas(response)

    def chat(self, messages: List[Dict[str, str]], model: str, temperature: Optional[float] = None) -> str:
        """Stream a chat completion and return the accumulated text."""
        return "".join(self.stream_chat(messages, model, temperature))

    # ========================================================================
    # REQUEST
    # ========================================================================

    def _endpoint(self, base_url: str) -> str:
        if self.provider == "ollama":
            return f"{base_url}/api/chat"
        return f"{base_url}/v1/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": self.USER_AGENT}
        if self.provider == "openai":
            if not self.api_key:
                raise LLMClientError("OpenAI API key not configured (set OPENAI_API_KEY)")
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, messages: List[Dict[str, str]], model: str, temperature: Optional[float] = None) -> Dict:
        if temperature is None:
            temperature = self.temperature
        if self.provider == "ollama":
            return {
                "model": model,
                "messages": messages,
                "stream": True,
                "options": {"temperature": temperature},
            }
        return {
            "model": model,
            "messages": messages,
            "stream": True,
            "temperature": temperature,
        }

    def _open_stream(
        self, messages: List[Dict[str, str]], model: str, temperature: Optional[float] = None,
    ) -> requests.Response:
        headers = self._headers()
        payload = self._payload(messages, model, temperature)
        last_error: Optional[str] = None

        for base_url in self.base_urls:
            url = self._endpoint(base_url)
            try:
                response = requests.post(
                    url, json=payload, headers=headers, stream=True, timeout=self.timeout
                )
            except requests.RequestException as e:
                logger.debug("Backend connection to %s failed: %s", url, e)
                last_error = f"{url}: {e}"
                continue

            if not 200 <= response.status_code < 300:
                body = ""
                try:
                    body = response.text[:300]
                except requests.RequestException:
                    pass
                response.close()
                last_error = f"{url}: HTTP {response.status_code} {body}".strip()
                logger.debug("Backend %s returned HTTP %d", url, response.status_code)
                continue

            return response

        raise LLMClientError(f"Backend unavailable ({self.provider}): {last_error}")

    # ========================================================================
    # STREAM PARSING
    # ========================================================================

    def _iter_deltas(self, response: requests.Response) -> Iterator[str]:
        response.encoding = response.encoding or "utf-8"
        seen_lines = 0
        parsed = 0

        try:
            for raw in response.iter_lines(decode_unicode=True):
                if raw is None:
                    continue
                line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
                line = line.strip()
                if not line:
                    continue
                seen_lines += 1

                if self.provider == "ollama":
                    fragment = self._parse_json(line)
                    if fragment is None:
                        continue
                    parsed += 1
                    if fragment.get("error"):
                        raise LLMClientError(f"Backend error: {fragment['error']}")
                    delta = (fragment.get("message") or {}).get("content")
                    if delta:
                        yield delta
                    if fragment.get("done"):
                        return
                else:
                    if not line.startswith("data:"):
                        # SSE comments / event names carry no text
                        seen_lines -= 1
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        return
                    fragment = self._parse_json(data)
                    if fragment is None:
                        continue
                    parsed += 1
                    if fragment.get("error"):
                        raise LLMClientError(f"Backend error: {fragment['error']}")
                    for choice in fragment.get("choices") or []:
                        delta = (choice.get("delta") or {}).get("content")
                        if delta:
                            yield delta
        except requests.RequestException as e:
            raise LLMClientError(f"Stream interrupted: {e}") from e

        if seen_lines == 0:
            raise LLMClientError("Empty response stream")
        if parsed == 0:
            raise LLMClientError(f"Malformed stream: none of {seen_lines} lines parsed")

    @staticmethod
    def _parse_json(line: str) -> Optional[Dict]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable stream line: %s", line[:120])
            return None
        return data if isinstance(data, dict) else None
