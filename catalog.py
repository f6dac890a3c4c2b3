"""Static model catalog served on /api/tags."""

from __future__ import annotations

import hashlib
from typing import Any, Dict, List

from router import MODEL_TAG_SUFFIX

CATALOG_MODELS = (
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4.1-nano",
    "gpt-4.1-mini",
    "gpt-4.1",
    "gpt-3.5",
    "tts",
    "base64",
    "dall-e-3",
)

_MODIFIED_AT = "2025-01-01T00:00:00Z"


def _entry(family: str) -> Dict[str, Any]:
    name = f"{family}{MODEL_TAG_SUFFIX}"
    return {
        "name": name,
        "model": name,
        "modified_at": _MODIFIED_AT,
        "size": 0,
        "digest": hashlib.sha256(name.encode("utf-8")).hexdigest(),
        "details": {
            "parent_model": "",
            "format": "openai",
            "family": family,
            "families": [family],
            "parameter_size": "unknown",
            "quantization_level": "none",
        },
    }


def build_catalog() -> Dict[str, List[Dict[str, Any]]]:
    return {"models": [_entry(family) for family in CATALOG_MODELS]}
