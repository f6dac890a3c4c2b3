"""Interactive startup prompts for the session-wide toggles."""

from __future__ import annotations

import logging
import queue
import sys
import threading
from dataclasses import replace
from typing import Callable, Optional

from config import AppConfig, StreamMode, TrimMode, env_is_set

log = logging.getLogger("ollama_proxy")

STREAM_PROMPT_TIMEOUT_S = 10.0
TRIM_PROMPT_TIMEOUT_S = 3.0

AskFn = Callable[[str, float], Optional[str]]


def ask_with_timeout(prompt: str, timeout_s: float) -> Optional[str]:
    """Read one line from stdin; None if nothing arrives within ``timeout_s``."""
    answers: "queue.Queue[str]" = queue.Queue(maxsize=1)

    def _reader() -> None:
        try:
            answers.put(input(prompt))
        except EOFError:
            answers.put("")

    threading.Thread(target=_reader, name="toggle-prompt", daemon=True).start()
    try:
        return answers.get(timeout=timeout_s)
    except queue.Empty:
        return None


def parse_stream_answer(answer: Optional[str]) -> StreamMode:
    value = (answer or "").strip().lower()
    if value == "on":
        return StreamMode.ON
    if value == "off":
        return StreamMode.OFF
    return StreamMode.ASK


def parse_trim_answer(answer: Optional[str]) -> TrimMode:
    return TrimMode.ON if (answer or "").strip().lower() == "p" else TrimMode.OFF


def prompt_session_toggles(config: AppConfig, ask: AskFn = ask_with_timeout) -> AppConfig:
    """
    Ask the operator for the streaming and trim overrides.

    Toggles set explicitly through the environment are not asked for. The
    result is a new config; the toggles stay fixed for the process lifetime.
    """
    stream_mode = config.stream_mode
    if not env_is_set("STREAM_MODE"):
        answer = ask("Force streaming? (on/off/ask): ", STREAM_PROMPT_TIMEOUT_S)
        if answer is None:
            print(f"\nno input in {STREAM_PROMPT_TIMEOUT_S:g}s, streaming is decided per request")
        stream_mode = parse_stream_answer(answer)

    trim_mode = config.trim_mode
    if not env_is_set("TRIM_MODE"):
        answer = ask(
            "Press 'p' to enable trim mode (long chat prompts are trimmed instead of rejected): ",
            TRIM_PROMPT_TIMEOUT_S,
        )
        if answer is None:
            print(f"\nno input in {TRIM_PROMPT_TIMEOUT_S:g}s, trim mode disabled")
        trim_mode = parse_trim_answer(answer)

    log.info("Session toggles: stream_mode=%s trim_mode=%s", stream_mode.value, trim_mode.value)
    return replace(config, stream_mode=stream_mode, trim_mode=trim_mode)


def should_prompt(config: AppConfig) -> bool:
    return config.interactive_toggles and sys.stdin is not None and sys.stdin.isatty()
