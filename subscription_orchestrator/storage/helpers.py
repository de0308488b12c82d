from __future__ import annotations

import contextlib
import hashlib
import json
from typing import Any


def dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def load_json_object(raw: Any) -> dict[str, Any] | None:
    if not raw:
        return None
    with contextlib.suppress(Exception):
        candidate = json.loads(raw)
        if isinstance(candidate, dict):
            return candidate
    return None


def doc_id_from_text(value: str) -> str:
    normalized = value.strip().replace("/", "_")
    if not normalized:
        raise ValueError("Document id source must not be empty.")

    if len(normalized) <= 128:
        return normalized

    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{normalized[:96]}-{digest}"
