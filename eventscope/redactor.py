"""Sensitive-data masking for event payloads."""

import logging
import re

logger = logging.getLogger(__name__)

MASK = "[FILTERED]"

DEFAULT_SENSITIVE_KEYS = (
    "password",
    "password_confirmation",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_token",
    "refresh_token",
    "authorization",
    "auth",
    "credential",
    "private_key",
    "secret_key",
    "credit_card",
    "card_number",
    "cvv",
    "ssn",
)

_MIN_SECRET_LENGTH = 20
_BASE64_RE = re.compile(r"[A-Za-z0-9+/=]{40,}")
_JWT_RE = re.compile(r"ey[A-Za-z0-9_-]+\.ey[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


def looks_like_secret(value: str) -> bool:
    """True for bearer tokens, long base64 blobs and JWT-shaped strings."""
    if len(value) < _MIN_SECRET_LENGTH:
        return False
    if value.startswith("Bearer "):
        return True
    if _BASE64_RE.fullmatch(value):
        return True
    return bool(_JWT_RE.fullmatch(value))


class Redactor:
    """Returns deep copies of payloads with sensitive values replaced by MASK.

    A map key is sensitive when its lower-cased form contains any of the
    configured substrings. Never mutates its input and never raises.
    """

    def __init__(self, extra_keys=()):
        self._keys = list(DEFAULT_SENSITIVE_KEYS)
        self.add_sensitive_keys(*extra_keys)

    @property
    def sensitive_keys(self) -> tuple:
        return tuple(self._keys)

    def add_sensitive_keys(self, *keys):
        for key in keys:
            key = str(key).lower()
            if key and key not in self._keys:
                self._keys.append(key)

    def is_sensitive_key(self, key) -> bool:
        try:
            key_str = str(key).lower()
        except Exception:
            return False
        return any(sensitive in key_str for sensitive in self._keys)

    def redact(self, payload):
        return self._redact_value(payload)

    def _redact_value(self, value):
        try:
            if isinstance(value, dict):
                return {
                    key: MASK if self.is_sensitive_key(key) else self._redact_value(item)
                    for key, item in value.items()
                }
            if isinstance(value, list):
                return [self._redact_value(item) for item in value]
            if isinstance(value, tuple):
                return tuple(self._redact_value(item) for item in value)
            if isinstance(value, str) and looks_like_secret(value):
                return MASK
            return value
        except Exception:
            logger.exception("Redaction failed for %s value, masking it", type(value).__name__)
            return MASK


_default = Redactor()


def redact(payload):
    """Redact with the built-in sensitive key list."""
    return _default.redact(payload)
