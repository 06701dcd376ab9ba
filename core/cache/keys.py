# Path: core/cache/keys.py
# Purpose: Derive stable cache keys for sorting results, embeddings, vision analyses, and atlases.
# Layer: core/cache.
# Details: Inputs are case-folded and id lists sorted before hashing so equivalent requests share a key.

from __future__ import annotations

import hashlib
import json
import re
from typing import Any, Iterable, Mapping, Optional

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Case-fold, trim, and collapse whitespace."""

    return _WHITESPACE.sub(" ", text.strip()).casefold()


def _digest(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:32]


def sorting_key(
    query: str,
    owner_id: str,
    image_ids: Iterable[str],
    hints: Optional[Mapping[str, Any]] = None,
) -> str:
    """Key for a complete sorting response."""

    normalized_hints = {}
    for name, value in (hints or {}).items():
        if isinstance(value, str):
            value = normalize_text(value)
        elif isinstance(value, (list, tuple, set)):
            value = sorted(normalize_text(str(item)) for item in value)
        normalized_hints[name] = value

    payload = {
        "query": normalize_text(query),
        "owner": owner_id,
        "hints": normalized_hints,
        "images": sorted(str(image_id) for image_id in image_ids),
    }
    return f"sort:{_digest(payload)}"


def embedding_key(text: str, model: str) -> str:
    return f"embedding:{model}:{_digest(normalize_text(text))}"


def vision_key(atlas_key: str, query: Optional[str] = None) -> str:
    payload = {"atlas": atlas_key, "query": normalize_text(query) if query else None}
    return f"vision:{_digest(payload)}"


def atlas_key(image_ids: Iterable[str], purpose: str) -> str:
    """Key for a packed atlas; independent of the order the images were given in."""

    ids = sorted(str(image_id) for image_id in image_ids)
    return f"atlas:{normalize_text(purpose)}:{_digest(ids)}"
