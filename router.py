"""Model-name routing to upstream payload formats, with pre-forwarding guards."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from config import AppConfig
from errors import BlockedBySpamGuard, TooLong
from models import ConversationRequest, Message
from truncation import total_length, truncate_messages

log = logging.getLogger("ollama_proxy")

MODEL_TAG_SUFFIX = ":latest"

# Marker used by chat front-ends for background title / follow-up generation.
SPAM_MARKER = "### Task:"

_CHAT_SPAM_TEXT = (
    "Request blocked due to unnecessary api spam (trying to predict next messages/chatname)"
)
_MEDIA_SPAM_TEXT = "Request blocked due to unnecessary api spam"
_CHAT_TOO_LONG_TEXT = (
    "prompt too long please keep it under {limit} characters "
    "(or simply enable trim mode next time on runtime)"
)
_IMAGE_TOO_LONG_TEXT = (
    "please keep the text under {limit} characters "
    "(btw using image generation in chat mode is not smart)"
)
_SPEECH_TOO_LONG_TEXT = "please keep the text under {limit} characters (btw using tts in chat is not smart)"

IMAGE_SIZE = "1024x1024"
IMAGE_COUNT = 1


class Route(str, Enum):
    CHAT_V2 = "chat_v2"
    IMAGE = "image"
    BASE64_IMAGE = "base64_image"
    SPEECH = "speech"
    CHAT_V1 = "chat_v1"


@dataclass(frozen=True)
class RouteSpec:
    """Static per-route policy."""

    path: str
    limit: int
    # True: limit applies to the whole conversation and may be trimmed.
    # False: limit applies to the last message only and always rejects.
    aggregate_limit: bool
    chat_like: bool
    legacy_reply: bool
    spam_text: str
    too_long_text: str


ROUTE_SPECS: Dict[Route, RouteSpec] = {
    Route.CHAT_V2: RouteSpec(
        path="/v2/chat/completions",
        limit=8000,
        aggregate_limit=True,
        chat_like=True,
        legacy_reply=False,
        spam_text=_CHAT_SPAM_TEXT,
        too_long_text=_CHAT_TOO_LONG_TEXT,
    ),
    Route.IMAGE: RouteSpec(
        path="/v3/images/generations",
        limit=1000,
        aggregate_limit=False,
        chat_like=False,
        legacy_reply=False,
        spam_text=_MEDIA_SPAM_TEXT,
        too_long_text=_IMAGE_TOO_LONG_TEXT,
    ),
    Route.BASE64_IMAGE: RouteSpec(
        path="/v4/images/generations",
        limit=1000,
        aggregate_limit=False,
        chat_like=False,
        legacy_reply=False,
        spam_text=_MEDIA_SPAM_TEXT,
        too_long_text=_IMAGE_TOO_LONG_TEXT,
    ),
    Route.SPEECH: RouteSpec(
        path="/v5/audio/generations",
        limit=500,
        aggregate_limit=False,
        chat_like=False,
        legacy_reply=False,
        spam_text=_MEDIA_SPAM_TEXT,
        too_long_text=_SPEECH_TOO_LONG_TEXT,
    ),
    Route.CHAT_V1: RouteSpec(
        path="/v1/chat/completions",
        limit=2000,
        aggregate_limit=True,
        chat_like=True,
        legacy_reply=True,
        spam_text=_CHAT_SPAM_TEXT,
        too_long_text=_CHAT_TOO_LONG_TEXT,
    ),
}

MODEL_ROUTES: Dict[str, Route] = {
    "gpt-4o": Route.CHAT_V2,
    "gpt-4o-mini": Route.CHAT_V2,
    "gpt-4.1-nano": Route.CHAT_V2,
    "gpt-4.1-mini": Route.CHAT_V2,
    "gpt-4.1": Route.CHAT_V2,
    "dall-e-3": Route.IMAGE,
    "base64": Route.BASE64_IMAGE,
    "tts": Route.SPEECH,
}

FALLBACK_ROUTE = Route.CHAT_V1


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    base_model: str
    endpoint: str
    payload: Dict[str, Any]

    @property
    def spec(self) -> RouteSpec:
        return ROUTE_SPECS[self.route]

    @property
    def content_is_chat_like(self) -> bool:
        return self.spec.chat_like

    @property
    def uses_legacy_reply_field(self) -> bool:
        return self.spec.legacy_reply

    @property
    def body(self) -> bytes:
        """Encoded upstream payload."""
        return json.dumps(self.payload, ensure_ascii=False, allow_nan=False).encode("utf-8")


def base_model_name(model_name: str) -> str:
    """Strip one trailing ``:latest`` tag."""
    if model_name.endswith(MODEL_TAG_SUFFIX):
        return model_name[: -len(MODEL_TAG_SUFFIX)]
    return model_name


def resolve_route(model_name: str) -> Route:
    return MODEL_ROUTES.get(base_model_name(model_name), FALLBACK_ROUTE)


def _check_spam(messages: List[Message], spec: RouteSpec) -> None:
    for m in messages:
        if SPAM_MARKER in m.content:
            log.info("Blocked request (unnecessary api spam)")
            raise BlockedBySpamGuard(spec.spam_text)


def _apply_length_guard(
    messages: List[Message],
    spec: RouteSpec,
    route: Route,
    config: AppConfig,
) -> List[Message]:
    if not spec.aggregate_limit:
        last_len = len(messages[-1].content) if messages else 0
        if last_len > spec.limit:
            log.info("%s prompt too long (%d chars > %d), rejecting", route.value, last_len, spec.limit)
            raise TooLong(spec.too_long_text.format(limit=spec.limit), spec.limit, last_len)
        return messages

    total = total_length(messages)
    if total <= spec.limit:
        return messages
    if config.trim_enabled:
        log.info("%s prompt too long (%d chars > %d), trimming", route.value, total, spec.limit)
        return truncate_messages(messages, spec.limit)
    log.info(
        "%s prompt too long (%d chars > %d), rejecting (trim mode is off)",
        route.value,
        total,
        spec.limit,
    )
    raise TooLong(spec.too_long_text.format(limit=spec.limit), spec.limit, total)


def _build_payload(route: Route, base_model: str, req: ConversationRequest) -> Dict[str, Any]:
    if route is Route.CHAT_V2:
        return {
            "model": base_model,
            "messages": [m.to_dict() for m in req.messages],
            "temperature": req.options.temperature,
        }
    if route is Route.IMAGE:
        return {
            "model": base_model,
            "prompt": req.last_content,
            "size": IMAGE_SIZE,
            "n": IMAGE_COUNT,
        }
    if route is Route.BASE64_IMAGE:
        return {"prompt": req.last_content}
    if route is Route.SPEECH:
        return {"text": req.last_content}
    return {"messages": [m.content for m in req.messages]}


def route_request(req: ConversationRequest, config: AppConfig) -> RouteDecision:
    """
    Pick the upstream route for ``req`` and build its payload.

    Raises BlockedBySpamGuard or TooLong when a guard rejects the request;
    nothing is sent upstream in that case.
    """
    base_model = base_model_name(req.model_name)
    route = resolve_route(req.model_name)
    if base_model not in MODEL_ROUTES:
        log.debug("Model %r not matched, falling back to %s", base_model, route.value)
    spec = ROUTE_SPECS[route]

    messages = list(req.messages)
    _check_spam(messages, spec)
    kept = _apply_length_guard(messages, spec, route, config)
    if kept is not messages:
        req = req.with_messages(kept)

    return RouteDecision(
        route=route,
        base_model=base_model,
        endpoint=f"{config.upstream_base_url}{spec.path}",
        payload=_build_payload(route, base_model, req),
    )
