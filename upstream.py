"""Upstream API communication, response classification and reply decoding."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Tuple, Union

import httpx

from config import AppConfig
from errors import RateLimited, UpstreamBlocked, UpstreamSchemaViolation, UpstreamUnavailable
from logger import preview
from router import Route, RouteDecision

log = logging.getLogger("ollama_proxy")

HTML_IN_JSON_MARKER = '{"reply":"<!DOCTYPE html>\\'
RATE_LIMIT_MARKER = '"Too many requests ("'

BLOCKED_TEXT = "Response was blocked please try again in a minute..."
RATE_LIMITED_TEXT = (
    "Too many requests please wait a min... "
    "(contact the upstream operator if you think higher request limits should be set)"
)

PREWARM_PATH = "/v1/chat/completions"


class UpstreamClient:
    """Send routed payloads to the upstream API."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @staticmethod
    def get_headers() -> dict[str, str]:
        return {"Content-Type": "application/json"}

    @staticmethod
    def build_http_client(config: AppConfig) -> httpx.AsyncClient:
        """Shared connection pool for all requests."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout_s),
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=10, keepalive_expiry=90.0),
        )

    async def send(self, client: httpx.AsyncClient, decision: RouteDecision) -> Tuple[int, bytes]:
        """
        POST the routed payload and return (status, body).

        Transport errors and timeouts become UpstreamUnavailable; the call is
        never retried.
        """
        body = decision.body
        if self._config.debug_upstream_bodies:
            log.debug("Sending to %s: %s", decision.endpoint, preview(body.decode("utf-8", errors="replace"), 2000))

        t0 = time.time()
        try:
            resp = await client.post(decision.endpoint, content=body, headers=self.get_headers())
        except httpx.HTTPError as e:
            dt = (time.time() - t0) * 1000
            log.warning(
                "Upstream request failed route=%s endpoint=%s ms=%.1f err=%r",
                decision.route.value,
                decision.endpoint,
                dt,
                e,
            )
            raise UpstreamUnavailable() from e

        dt = (time.time() - t0) * 1000
        log.info("Upstream %s status=%s ms=%.1f", decision.route.value, resp.status_code, dt)
        if self._config.debug_upstream_bodies:
            log.debug("Upstream replied: %s", preview(resp.text, 2000))
        return resp.status_code, resp.content

    async def prewarm(self, client: httpx.AsyncClient) -> None:
        """Open a connection to the upstream ahead of the first real request."""
        log.debug("Prewarming connection to %s", self._config.upstream_base_url)
        try:
            await client.post(
                f"{self._config.upstream_base_url}{PREWARM_PATH}",
                json={"messages": ["hello world"]},
                headers=self.get_headers(),
            )
        except httpx.HTTPError as e:
            log.info("Prewarm failed (harmless, continuing): %r", e)
            return
        log.debug("Prewarm finished, connection is ready")


def _looks_like_html(body: bytes) -> bool:
    if body.startswith(HTML_IN_JSON_MARKER.encode("utf-8")):
        return True
    head = body.lstrip()[:32].lower()
    return head.startswith(b"<html") or head.startswith(b"<!doctype html")


def classify_upstream_response(status: int, body: bytes) -> bytes:
    """
    Translate blocked / rate-limited upstream replies into recoverable errors.

    Precedence: HTML page first, then 429 or the rate-limit marker. Anything
    else is returned unchanged for decoding.
    """
    if _looks_like_html(body):
        log.warning("HTML response detected from upstream (status=%s), likely blocked", status)
        raise UpstreamBlocked(BLOCKED_TEXT)
    if status == 429 or RATE_LIMIT_MARKER.encode("utf-8") in body:
        log.warning("Upstream rate limited the request (status=%s)", status)
        raise RateLimited(RATE_LIMITED_TEXT)
    return body


# ----------------------------------------------------------------------------
# Reply variants
# ----------------------------------------------------------------------------

@dataclass(frozen=True)
class ChatV1Reply:
    reply: str

    @property
    def text(self) -> str:
        return self.reply


@dataclass(frozen=True)
class ChatV2Reply:
    content: str

    @property
    def text(self) -> str:
        return self.content


@dataclass(frozen=True)
class ImageReply:
    url: str

    @property
    def text(self) -> str:
        return self.url


@dataclass(frozen=True)
class Base64Reply:
    data: str

    @property
    def text(self) -> str:
        return self.data


@dataclass(frozen=True)
class AudioReply:
    url: str

    @property
    def text(self) -> str:
        return self.url


ChatReply = Union[ChatV1Reply, ChatV2Reply]
UpstreamReply = Union[ChatV1Reply, ChatV2Reply, ImageReply, Base64Reply, AudioReply]


def _string_field(obj: dict, key: str, route: Route) -> str:
    value = obj.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise UpstreamSchemaViolation(f"[ERROR] parsing {route.value} response...")
    return value


def decode_reply(route: Route, body: bytes) -> UpstreamReply:
    """Decode the upstream body using the shape expected for ``route``."""
    try:
        obj: Any = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        log.warning("Upstream %s body is not JSON: %s", route.value, preview(body.decode("utf-8", errors="replace")))
        raise UpstreamSchemaViolation(f"[ERROR] parsing {route.value} response...") from e
    if not isinstance(obj, dict):
        raise UpstreamSchemaViolation(f"[ERROR] parsing {route.value} response...")

    if route is Route.CHAT_V1:
        return ChatV1Reply(reply=_string_field(obj, "reply", route))
    if route is Route.CHAT_V2:
        return ChatV2Reply(content=_string_field(obj, "content", route))
    if route is Route.IMAGE:
        data = obj.get("data") or []
        if not isinstance(data, list):
            raise UpstreamSchemaViolation("[ERROR] generating image (parsing the response)...")
        if not data:
            return ImageReply(url="")
        first = data[0]
        if not isinstance(first, dict):
            raise UpstreamSchemaViolation("[ERROR] generating image (parsing the response)...")
        return ImageReply(url=_string_field(first, "url", route))
    if route is Route.BASE64_IMAGE:
        output = obj.get("output") or []
        if not isinstance(output, list) or not all(isinstance(row, list) for row in output):
            raise UpstreamSchemaViolation("[ERROR] generating base64...")
        if not output or not output[0]:
            return Base64Reply(data="")
        first = output[0][0]
        if not isinstance(first, str):
            raise UpstreamSchemaViolation("[ERROR] generating base64...")
        return Base64Reply(data=first)
    return AudioReply(url=_string_field(obj, "url", route))
