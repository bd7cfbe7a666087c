from __future__ import annotations

from collections.abc import Mapping
import hashlib
import json


def payload_digest(payload: Mapping[str, object]) -> str:
    """Content hash used as the change-detection snapshot.

    Key order does not matter; any value change does.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
