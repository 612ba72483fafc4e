"""Content fingerprints used as vector-store record identifiers.

Fingerprints are computed from the normalized chunk text only. The source URL
and the chunk ordinal are not part of the digest, so the same passage found on
two pages is stored once per collection and re-uploading a page overwrites its
records instead of duplicating them.
"""

from __future__ import annotations

import hashlib
import re
import uuid

_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def fingerprint(text: str) -> str:
    normalized = normalize_text(text)
    if not normalized:
        raise ValueError("cannot fingerprint empty text")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def point_id(content_fingerprint: str) -> str:
    # Qdrant only accepts UUIDs or unsigned integers as point ids
    return str(uuid.uuid5(uuid.NAMESPACE_OID, content_fingerprint))
