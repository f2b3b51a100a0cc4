"""
OpenAI-compatible completion client for TRIAD.

Copyright (c) 2025 Mathew Mark Mytka
SPDX-License-Identifier: LicenseRef-ESL-A

Licensed under the Earthian Stewardship License (ESL-A).
See LICENSE file for full terms.

Thin wrapper around POST {endpoint}/chat/completions that tolerates
both a single JSON body and a Server-Sent Events token stream, and
returns the response text with metadata (latency, tokens).
"""

import json
import time
import threading
import requests
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, List, Dict, Optional, Tuple


DEFAULT_ENDPOINTS = {
    "ollama": "http://localhost:11434/v1",
    "lmstudio": "http://localhost:1234/v1",
    "vllm": "http://localhost:8000/v1",
}

STREAM_SENTINEL = "[DONE]"


class CompletionError(RuntimeError):
    """Upstream failure with an HTTP-style status and a detail string."""

    def __init__(self, status: int, detail: str):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail


class CompletionCancelled(RuntimeError):
    """Raised when the in-flight completion was cancelled by the caller."""


@dataclass
class CompletionRequest:
    """One chat completion request for a role."""
    provider: str
    model: str
    messages: List[Dict[str, str]]
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 512
    repetition_penalty: float = 1.05
    stream: bool = True
    timeout_s: Optional[float] = None

    def to_payload(self) -> Dict:
        return {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
            "repetition_penalty": self.repetition_penalty,
            "stream": self.stream,
        }


@dataclass
class ResponseMetadata:
    """Metadata about an LLM response."""
    model: str
    provider: str
    latency_ms: float
    streamed: bool = False
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass
class DebugEntry:
    """One request/response exchange, kept for the debug view."""
    timestamp: str
    provider: str
    model: str
    url: str
    status: int
    latency_ms: float
    detail: str = ""
    response_preview: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


class DebugLog:
    """Capacity-bounded ring buffer of DebugEntry records."""

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("Debug log capacity must be at least 1")
        self.capacity = capacity
        self._entries = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, entry: DebugEntry):
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> List[DebugEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def resolve_endpoint(provider: str, endpoint: Optional[str] = None) -> str:
    """
    Resolve the base URL for a provider.

    Raises:
        CompletionError: (400) if the provider has no default and none was given
    """
    if endpoint:
        return endpoint.rstrip("/")
    default = DEFAULT_ENDPOINTS.get((provider or "").lower())
    if default is None:
        raise CompletionError(400, f"endpoint is required for provider {provider!r}")
    return default


class CompletionClient:
    """
    Client for OpenAI-compatible chat completion servers
    (Ollama, LM Studio, vLLM or any compatible endpoint).

    Designed for the three-role loop where we need:
    - Per-role provider and model assignment
    - Incremental token deltas forwarded to observers
    - Cancellation of the in-flight call only
    """

    def __init__(
        self,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        debug_capacity: int = 200,
        verbose: bool = True
    ):
        """
        Initialize completion client.

        Args:
            timeout: Default request timeout in seconds
            max_retries: Number of attempts on timeout (default 3)
            retry_backoff: Exponential backoff base between timeout retries
            debug_capacity: Size of the debug ring buffer
            verbose: Print retry notices
        """
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.verbose = verbose
        self.debug_log = DebugLog(debug_capacity)

    def complete(
        self,
        request: CompletionRequest,
        cancel_event: Optional[threading.Event] = None,
        on_delta: Optional[Callable[[str], None]] = None
    ) -> Tuple[str, ResponseMetadata]:
        """
        Run one completion and return the full text.

        Args:
            request: The completion request
            cancel_event: Set by another thread to abort the call
            on_delta: Called with each streamed token delta, in arrival order

        Returns:
            Tuple of (response_text, metadata)

        Raises:
            CompletionError: Upstream failure or abnormal stream end
            CompletionCancelled: cancel_event was set before completion
        """
        base = resolve_endpoint(request.provider, request.endpoint)
        url = f"{base}/chat/completions"

        headers = {"Content-Type": "application/json"}
        if request.api_key:
            headers["Authorization"] = f"Bearer {request.api_key}"

        timeout = request.timeout_s or self.timeout
        start_time = time.perf_counter()

        response = self._post_with_retry(url, request, headers, timeout, cancel_event)

        # requests.post cannot be interrupted while waiting for headers
        if cancel_event is not None and cancel_event.is_set():
            response.close()
            self._record(request, url, response.status_code, start_time, detail="cancelled")
            raise CompletionCancelled("Completion cancelled while awaiting response")

        try:
            if response.status_code >= 400:
                detail = response.text[:500]
                self._record(request, url, response.status_code, start_time, detail=detail)
                raise CompletionError(response.status_code, detail or response.reason or "upstream error")

            content_type = response.headers.get("Content-Type", "")
            if "text/event-stream" in content_type:
                text, usage = self._read_stream(response, cancel_event, on_delta)
                streamed = True
            else:
                text, usage = self._read_json(response)
                if on_delta and text:
                    on_delta(text)
                streamed = False
        except CompletionError as e:
            if e.status != response.status_code:
                self._record(request, url, e.status, start_time, detail=e.detail)
            raise
        finally:
            response.close()

        latency_ms = (time.perf_counter() - start_time) * 1000
        self._record(request, url, response.status_code, start_time, preview=text[:200])

        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
        total_tokens = usage.get("total_tokens")
        if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
            total_tokens = prompt_tokens + completion_tokens

        metadata = ResponseMetadata(
            model=request.model,
            provider=request.provider,
            latency_ms=latency_ms,
            streamed=streamed,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens
        )
        return text, metadata

    def _post_with_retry(
        self,
        url: str,
        request: CompletionRequest,
        headers: Dict[str, str],
        timeout: float,
        cancel_event: Optional[threading.Event]
    ) -> requests.Response:
        """POST the payload, retrying timeouts with exponential backoff."""
        last_error = None
        for attempt in range(self.max_retries):
            if cancel_event is not None and cancel_event.is_set():
                raise CompletionCancelled("Completion cancelled before request")
            try:
                return requests.post(
                    url,
                    json=request.to_payload(),
                    headers=headers,
                    timeout=timeout,
                    stream=request.stream
                )
            except requests.exceptions.Timeout as e:
                last_error = e
                if attempt < self.max_retries - 1:
                    wait = self.retry_backoff ** attempt
                    if self.verbose:
                        print(f"  [Retry] Timeout on attempt {attempt + 1}, retrying in {wait:.0f}s...")
                    time.sleep(wait)
                continue
            except requests.exceptions.ConnectionError:
                raise CompletionError(
                    503, f"Cannot connect to {request.provider} at {url}. Ensure the server is running."
                )
            except requests.exceptions.RequestException as e:
                raise CompletionError(500, f"proxy_failed: {e}")

        raise CompletionError(
            504, f"Request timed out after {self.max_retries} attempts ({timeout}s each): {last_error}"
        )

    @staticmethod
    def _read_json(response: requests.Response) -> Tuple[str, Dict]:
        """Extract content and usage from a single JSON body."""
        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError(502, f"Invalid JSON from upstream: {e}")

        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content") or ""
        return content, data.get("usage") or {}

    @staticmethod
    def _read_stream(
        response: requests.Response,
        cancel_event: Optional[threading.Event],
        on_delta: Optional[Callable[[str], None]]
    ) -> Tuple[str, Dict]:
        """
        Concatenate SSE token deltas until the [DONE] sentinel.

        A stream that closes without the sentinel, or breaks mid-read,
        is an abnormal end.
        """
        parts: List[str] = []
        usage: Dict = {}
        done = False

        try:
            # Split raw bytes; requests would decode charset-less text/* as Latin-1
            for line in response.iter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    raise CompletionCancelled("Completion cancelled mid-stream")
                if not line:
                    continue
                if isinstance(line, bytes):
                    line = line.decode("utf-8", errors="replace")
                if not line.startswith("data:"):
                    continue

                data = line[len("data:"):].strip()
                if data == STREAM_SENTINEL:
                    done = True
                    break

                try:
                    chunk = json.loads(data)
                except ValueError:
                    continue

                if chunk.get("usage"):
                    usage = chunk["usage"]
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                delta = (choices[0].get("delta") or {}).get("content")
                if delta:
                    parts.append(delta)
                    if on_delta:
                        on_delta(delta)
        except requests.exceptions.RequestException as e:
            raise CompletionError(502, f"Stream ended abnormally: {e}")

        if not done:
            raise CompletionError(502, "Stream ended without [DONE] sentinel")

        return "".join(parts), usage

    def _record(
        self,
        request: CompletionRequest,
        url: str,
        status: int,
        start_time: float,
        detail: str = "",
        preview: str = ""
    ):
        self.debug_log.append(DebugEntry(
            timestamp=datetime.now().isoformat(),
            provider=request.provider,
            model=request.model,
            url=url,
            status=status,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            detail=detail,
            response_preview=preview
        ))

    @staticmethod
    def is_running(endpoint: str) -> bool:
        """Check if the completion server is accessible."""
        try:
            response = requests.get(f"{endpoint.rstrip('/')}/models", timeout=2)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    @staticmethod
    def get_available_models(endpoint: str) -> List[str]:
        """
        Get list of available model ids.

        Returns:
            List of model ids, or empty list if the server is not running
        """
        try:
            response = requests.get(f"{endpoint.rstrip('/')}/models", timeout=5)
            response.raise_for_status()
            return [m["id"] for m in response.json().get("data", [])]
        except (requests.exceptions.RequestException, ValueError, KeyError):
            return []
