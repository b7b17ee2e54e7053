from __future__ import annotations

import base64
import json
import logging
import os
import threading
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter

from ..domain.chat_models import (
    Attachment,
    CompletionBlob,
    CompletionPart,
    CompletionText,
    CompletionTurn,
)
from ..domain.errors import EmptyTurnError, UpstreamGenerationError


logger = logging.getLogger(__name__)
LOG = logging.getLogger("chatrelay.llm")


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash-lite"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are Thabo Shoba, a highly intelligent and empathetic AI assistant. "
    "You are designed to be incredibly helpful, understanding, and always strive to provide the best possible support. "
    "You have a warm, human-like demeanor and are always apologetic if you make a mistake or if there's any misunderstanding. "
    "You value clear communication and are patient in your responses. "
    "Your goal is to make the user's experience as smooth and pleasant as possible, always sounding natural and approachable."
)


def _stream_timeout() -> Tuple[float, float]:
    connect = float(os.getenv("CHATRELAY_LLM_CONNECT_TIMEOUT", "5"))
    read = float(os.getenv("CHATRELAY_LLM_READ_TIMEOUT", "60"))
    return connect, read


def system_instruction() -> str:
    return os.getenv("CHATRELAY_SYSTEM_INSTRUCTION") or DEFAULT_SYSTEM_INSTRUCTION


def _build_session() -> requests.Session:
    session = requests.Session()
    # No retries: a failed generation is reported to the caller as is.
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _part_to_wire(part: CompletionPart) -> Dict[str, Any]:
    if isinstance(part, CompletionText):
        return {"text": part.text}
    return {
        "inline_data": {
            "mime_type": part.mime_type,
            "data": base64.b64encode(part.data).decode("ascii"),
        }
    }


def turns_to_wire(turns: Sequence[CompletionTurn]) -> List[Dict[str, Any]]:
    # Gemini rejects turns without parts; they stay in history but are not sent.
    return [{"role": t.role, "parts": [_part_to_wire(p) for p in t.parts]} for t in turns if t.parts]


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "").strip()[:300] or resp.reason or "unknown error"
    if isinstance(data, list) and data:
        data = data[0]
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return json.dumps(data)[:300]


class CompletionStream:
    """Lazy, single-use iterator over generated text fragments.

    Fragments come out in the order the service emitted them and the iterator
    is exhausted when the upstream SSE stream ends. ``close()`` drops the
    upstream connection; it may be called from another thread while a pull is
    blocked on the network.
    """

    def __init__(self, response: requests.Response, model: str = "") -> None:
        self._response = response
        self._lines: Iterator[Any] = response.iter_lines()
        self.model = model
        self.fragment_count = 0
        self._closed = False
        self._done = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed or self._done

    def __iter__(self) -> "CompletionStream":
        return self

    def __next__(self) -> str:
        while True:
            if self.closed:
                raise StopIteration
            try:
                raw_line = next(self._lines)
            except StopIteration:
                self._finish()
                raise
            except (requests.exceptions.RequestException, OSError) as exc:
                if self._closed:
                    raise StopIteration from None
                self._finish()
                LOG.error(
                    "llm_stream_broken",
                    extra={"model": self.model, "fragments": self.fragment_count, "err": str(exc)},
                )
                raise UpstreamGenerationError(
                    "Completion stream was interrupted", cause=exc, mid_stream=True
                ) from exc
            except Exception:
                if self._closed:
                    raise StopIteration from None
                raise
            fragment = self._parse_line(raw_line)
            if fragment:
                self.fragment_count += 1
                return fragment

    def _parse_line(self, raw_line: Any) -> Optional[str]:
        if not raw_line:
            return None
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        if not line.startswith("data:"):
            return None
        data = line[5:].strip()
        if not data:
            return None
        try:
            event = json.loads(data)
        except json.JSONDecodeError as exc:
            self._finish()
            raise UpstreamGenerationError(
                "Completion stream sent an unreadable event", cause=exc, mid_stream=True
            ) from exc
        if isinstance(event, dict) and event.get("error"):
            self._finish()
            err = event["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise UpstreamGenerationError(
                f"Completion service error: {message}",
                status=err.get("code") if isinstance(err, dict) else None,
                mid_stream=True,
            )
        return _event_text(event)

    def _finish(self) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        self._response.close()

    def close(self) -> None:
        with self._lock:
            if self._closed or self._done:
                self._closed = True
                return
            self._closed = True
        LOG.debug("llm_stream_closed", extra={"model": self.model, "fragments": self.fragment_count})
        self._response.close()


def _event_text(event: Any) -> Optional[str]:
    if not isinstance(event, dict):
        return None
    candidates = event.get("candidates") or []
    if not candidates:
        return None
    content = candidates[0].get("content") or {}
    texts = [
        str(p["text"])
        for p in content.get("parts") or []
        if isinstance(p, dict) and p.get("text") and not p.get("thought")
    ]
    return "".join(texts) or None


class CompletionClient(Protocol):
    def stream(self, contents: Sequence[CompletionTurn], system_instruction: str) -> Iterator[str]: ...


class GeminiClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[Tuple[float, float]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("GEMINI_API_KEY")
        self.model = model or os.getenv("GEMINI_MODEL", DEFAULT_MODEL)
        self.base_url = (base_url or os.getenv("GEMINI_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self._timeout = timeout or _stream_timeout()
        self._session = session or _build_session()

    def stream(self, contents: Sequence[CompletionTurn], system_instruction: str) -> CompletionStream:
        if not self.api_key:
            raise UpstreamGenerationError("Gemini API key is not configured")
        url = f"{self.base_url}/models/{self.model}:streamGenerateContent"
        payload: Dict[str, Any] = {"contents": turns_to_wire(contents)}
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        LOG.debug(
            "gemini_stream",
            extra={"model": self.model, "base_url": self.base_url, "turns": len(contents), "timeout": self._timeout},
        )
        try:
            resp = self._session.post(
                url,
                params={"alt": "sse"},
                headers={"x-goog-api-key": self.api_key},
                json=payload,
                timeout=self._timeout,
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            LOG.error("gemini_request_failed", extra={"model": self.model, "err": str(exc)})
            raise UpstreamGenerationError("Could not reach the completion service", cause=exc) from exc
        if resp.status_code >= 400:
            detail = _error_detail(resp)
            resp.close()
            LOG.error("gemini_request_rejected", extra={"model": self.model, "status": resp.status_code, "detail": detail})
            raise UpstreamGenerationError(
                f"Completion service rejected the request ({resp.status_code}): {detail}",
                status=resp.status_code,
            )
        return CompletionStream(resp, model=self.model)


_client: CompletionClient | None = None


def get_completion_client() -> CompletionClient:
    global _client
    if _client is None:
        _client = GeminiClient()
    return _client


def build_user_turn(user_text: Optional[str], attachments: Sequence[Attachment]) -> CompletionTurn:
    parts: List[CompletionPart] = []
    if user_text:
        parts.append(CompletionText(text=user_text))
    for attachment in attachments:
        parts.append(CompletionBlob(data=attachment.data, mime_type=attachment.mime_type))
    if not parts:
        raise EmptyTurnError("Message or file is required")
    return CompletionTurn(role="user", parts=parts)


def complete(
    history: Sequence[CompletionTurn],
    user_text: Optional[str],
    user_attachments: Sequence[Attachment] = (),
    client: Optional[CompletionClient] = None,
) -> Iterator[str]:
    """Start a streaming completion for a new user turn on top of ``history``.

    Raises :class:`EmptyTurnError` before any network call when the turn has
    no content, and :class:`UpstreamGenerationError` when the service rejects
    the request up front. The returned iterator yields fragments lazily and
    raises :class:`UpstreamGenerationError` if the stream breaks midway.
    """
    user_turn = build_user_turn(user_text, list(user_attachments or ()))
    contents = [*history, user_turn]
    llm = client or get_completion_client()
    LOG.info(
        "chat_completion_request",
        extra={"history_turns": len(history), "user_parts": len(user_turn.parts)},
    )
    return llm.stream(contents, system_instruction())
