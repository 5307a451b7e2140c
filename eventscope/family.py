"""Stable short hashes that group recurring events into families."""

import hashlib
import logging

logger = logging.getLogger(__name__)

SEPARATOR = "\x1f"
HASH_LENGTH = 16


def family_hash(*components) -> str | None:
    """Hash the non-empty components, in order, into a 16-char hex digest.

    Returns None when every component is empty or missing, meaning the
    event is not eligible for family grouping. Callers must keep component
    order consistent per entry type: swapping components changes the hash.
    """
    try:
        parts = [str(c) for c in components if c is not None and str(c) != ""]
        if not parts:
            return None
        digest = hashlib.sha256(SEPARATOR.join(parts).encode("utf-8"))
        return digest.hexdigest()[:HASH_LENGTH]
    except Exception:
        logger.exception("Failed to compute family hash")
        return None
