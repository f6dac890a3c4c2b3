"""NDJSON frame emission in the Ollama wire format."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, Iterator, List, Optional, get_args

from fastapi import Response
from fastapi.responses import StreamingResponse

from config import AppConfig, StreamMode
from models import ROLE_ASSISTANT
from upstream import ChatReply, UpstreamReply
from utils import now_rfc3339

log = logging.getLogger("ollama_proxy")

NDJSON_MEDIA_TYPE = "application/x-ndjson; charset=utf-8"
DONE_REASON_STOP = "stop"

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Accel-Buffering": "no",
    "Access-Control-Expose-Headers": "Content-Type",
}

# Placeholder statistics for the terminal frame; some clients refuse a stream without them.
SYNTHETIC_TIMING: Dict[str, int] = {
    "total_duration": 4768114600,
    "load_duration": 2497832600,
    "prompt_eval_count": 84,
    "prompt_eval_duration": 491959200,
    "eval_count": 37,
    "eval_duration": 1746310500,
}

_TIMING_KEYS = tuple(SYNTHETIC_TIMING)

# Ollama escapes HTML-significant characters and line/paragraph separators.
_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}
_HTML_ESCAPE_RE = re.compile("[<>&\u2028\u2029]")


@dataclass(frozen=True)
class StreamFrame:
    """One Ollama response object, in either chat or generate shape."""

    model: str
    created_at: str
    content: str
    done: bool
    done_reason: str = ""
    timing: Optional[Dict[str, int]] = None
    role: str = ROLE_ASSISTANT

    def to_dict(self, is_generate: bool) -> Dict[str, Any]:
        out: Dict[str, Any] = {"model": self.model, "created_at": self.created_at}
        if is_generate:
            out["response"] = self.content
        else:
            out["message"] = {"role": self.role, "content": self.content}
        if self.done_reason:
            out["done_reason"] = self.done_reason
        out["done"] = self.done
        if self.timing:
            for key in _TIMING_KEYS:
                value = self.timing.get(key)
                if value:
                    out[key] = value
        return out


def encode_frame(obj: Dict[str, Any]) -> bytes:
    """Compact JSON followed by a single newline."""
    txt = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    txt = _HTML_ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], txt)
    return (txt + "\n").encode("utf-8", errors="replace")


def scrub_text(text: str) -> str:
    """
    Drop newlines and control characters before streaming.

    Keeps printable ASCII (0x20-0x7E), tab, and everything from 0x80 up.
    """
    text = text.replace("\n", "")
    return "".join(ch for ch in text if ch == "\t" or 0x20 <= ord(ch) <= 0x7E or ord(ch) >= 0x80)


def chunk_text(text: str, size: int) -> List[str]:
    if size <= 0:
        raise ValueError("chunk size must be > 0")
    return [text[i:i + size] for i in range(0, len(text), size)]


def decide_streaming(requested: Optional[bool], mode: StreamMode) -> bool:
    """Session override wins; otherwise the request's flag, defaulting to streaming."""
    if mode is StreamMode.ON:
        return True
    if mode is StreamMode.OFF:
        return False
    if requested is None:
        return True
    return requested


def refusal_frame(model: str, is_generate: bool, text: str, created_at: Optional[str] = None) -> Dict[str, Any]:
    """Terminal advisory frame used for guard rejections and upstream trouble."""
    frame = StreamFrame(
        model=model,
        created_at=created_at or now_rfc3339(),
        content=text,
        done=True,
        done_reason=DONE_REASON_STOP,
    )
    return frame.to_dict(is_generate)


def single_frame_response(obj: Dict[str, Any]) -> Response:
    return Response(content=encode_frame(obj), media_type=NDJSON_MEDIA_TYPE)


def refusal_response(model: str, is_generate: bool, text: str) -> Response:
    return single_frame_response(refusal_frame(model, is_generate, text))


class FrameEmitter:
    """Render one upstream reply as Ollama frames for one request."""

    def __init__(self, config: AppConfig, model: str, is_generate: bool) -> None:
        self._config = config
        self._model = model
        self._is_generate = is_generate
        # Every frame of one response carries the same timestamp.
        self._created_at = now_rfc3339()

    def _frame(self, content: str, done: bool, **kwargs: Any) -> Dict[str, Any]:
        return StreamFrame(
            model=self._model,
            created_at=self._created_at,
            content=content,
            done=done,
            **kwargs,
        ).to_dict(self._is_generate)

    def stream_frames(self, reply_text: str) -> Iterator[Dict[str, Any]]:
        """Content frames for the scrubbed reply, then exactly one terminal frame."""
        for chunk in chunk_text(scrub_text(reply_text), self._config.stream_chunk_size):
            yield self._frame(chunk, done=False)
        yield self._frame("", done=True, done_reason=DONE_REASON_STOP, timing=SYNTHETIC_TIMING)

    def final_frame(self, content: str) -> Dict[str, Any]:
        return self._frame(content, done=True, done_reason=DONE_REASON_STOP)

    async def _paced(self, reply_text: str) -> AsyncGenerator[bytes, None]:
        sent = 0
        try:
            for frame in self.stream_frames(reply_text):
                yield encode_frame(frame)
                sent += 1
                if not frame["done"] and self._config.stream_delay_s > 0:
                    await asyncio.sleep(self._config.stream_delay_s)
        except asyncio.CancelledError:
            log.debug("Client went away mid-stream after %d frames model=%s", sent, self._model)
            raise

    def render(self, reply: UpstreamReply, requested_stream: Optional[bool]) -> Response:
        if isinstance(reply, get_args(ChatReply)):
            if decide_streaming(requested_stream, self._config.stream_mode):
                return StreamingResponse(
                    self._paced(reply.text),
                    media_type=NDJSON_MEDIA_TYPE,
                    headers=STREAM_HEADERS,
                )
            return single_frame_response(self.final_frame(reply.text))
        # image / base64 / audio: one terminal frame with the URL or payload
        return single_frame_response(self.final_frame(reply.text))
