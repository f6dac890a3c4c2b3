"""Canonical message model and inbound request normalization."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import MalformedRequest

log = logging.getLogger("ollama_proxy")

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT})

DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class Message:
    """A single role-tagged chat message."""

    role: str
    content: str

    @property
    def is_pinned(self) -> bool:
        """System messages survive truncation."""
        return self.role == ROLE_SYSTEM

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def _finite_float(raw: Any) -> Optional[float]:
    # bool is an int subclass; a JSON true is not a number
    if not isinstance(raw, (int, float)) or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


@dataclass(frozen=True)
class GenerationOptions:
    """Recognized generation options; everything else in ``options`` is ignored."""

    temperature: float = DEFAULT_TEMPERATURE

    @classmethod
    def from_mapping(cls, options: Any) -> GenerationOptions:
        if not isinstance(options, Mapping):
            return cls()

        temperature = DEFAULT_TEMPERATURE
        raw = options.get("temperature")
        value = _finite_float(raw)
        if value is not None:
            temperature = value
        elif raw is not None:
            log.debug("Ignoring non-numeric temperature=%r", raw)

        ignored = sorted(str(k) for k in options if k != "temperature")
        if ignored:
            log.debug("Ignoring unrecognized options: %s", ignored)
        return cls(temperature=temperature)


@dataclass(frozen=True)
class ConversationRequest:
    """One inbound call, normalized from either endpoint shape."""

    model_name: str
    messages: Tuple[Message, ...]
    stream: Optional[bool] = None
    options: GenerationOptions = field(default_factory=GenerationOptions)
    is_generate: bool = False

    @property
    def last_content(self) -> str:
        if not self.messages:
            return ""
        return self.messages[-1].content

    def with_messages(self, messages: List[Message]) -> ConversationRequest:
        return ConversationRequest(
            model_name=self.model_name,
            messages=tuple(messages),
            stream=self.stream,
            options=self.options,
            is_generate=self.is_generate,
        )


def _optional_str(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MalformedRequest()
    return value


def _optional_stream(body: Dict[str, Any]) -> Optional[bool]:
    value = body.get("stream")
    if value is None:
        return None
    if not isinstance(value, bool):
        raise MalformedRequest()
    return value


def _parse_messages(raw: Any) -> List[Message]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise MalformedRequest()
    out: List[Message] = []
    for item in raw:
        if not isinstance(item, dict):
            raise MalformedRequest()
        role = item.get("role")
        content = item.get("content", "")
        if content is None:
            content = ""
        if role not in ROLES or not isinstance(content, str):
            raise MalformedRequest()
        out.append(Message(role=role, content=content))
    return out


def normalize_chat_payload(body: Dict[str, Any]) -> ConversationRequest:
    """
    Normalize an /api/chat body.

    A non-empty side-channel ``system`` string becomes a new leading system
    message; existing system messages in the list are kept after it.
    """
    messages = _parse_messages(body.get("messages"))
    system = _optional_str(body, "system")
    if system:
        messages.insert(0, Message(role=ROLE_SYSTEM, content=system))

    return ConversationRequest(
        model_name=_optional_str(body, "model"),
        messages=tuple(messages),
        stream=_optional_stream(body),
        options=GenerationOptions.from_mapping(body.get("options")),
        is_generate=False,
    )


def normalize_generate_payload(body: Dict[str, Any]) -> ConversationRequest:
    """Normalize an /api/generate body into [system?, user(prompt)]."""
    messages: List[Message] = []
    system = _optional_str(body, "system")
    if system:
        messages.append(Message(role=ROLE_SYSTEM, content=system))
    messages.append(Message(role=ROLE_USER, content=_optional_str(body, "prompt")))

    return ConversationRequest(
        model_name=_optional_str(body, "model"),
        messages=tuple(messages),
        stream=_optional_stream(body),
        options=GenerationOptions.from_mapping(body.get("options")),
        is_generate=True,
    )


def _reject_constant(name: str) -> Any:
    # NaN and Infinity are not JSON
    raise ValueError(f"non-standard JSON constant {name}")


def parse_request_body(raw: bytes, is_generate: bool) -> ConversationRequest:
    """Decode an inbound body; any shape problem is a MalformedRequest."""
    try:
        body = json.loads(raw, parse_constant=_reject_constant)
    except (ValueError, UnicodeDecodeError) as e:
        log.debug("Inbound body is not JSON: %s", e)
        raise MalformedRequest() from e
    if not isinstance(body, dict):
        raise MalformedRequest()

    if is_generate:
        return normalize_generate_payload(body)
    return normalize_chat_payload(body)
