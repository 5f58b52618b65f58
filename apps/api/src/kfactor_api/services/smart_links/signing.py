"""HMAC signing for smart links and attribution payloads."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping


class SigningKeyMissingError(RuntimeError):
    """Raised when a signature is requested without a configured secret."""


@dataclass(frozen=True)
class SmartLinkFields:
    """Canonical tuple covered by a smart link signature."""

    code: str
    expires_at: datetime
    inviter_id: str
    loop: str
    params: Mapping[str, Any] | None = None


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


_DELIMITERS = frozenset("&=")


def _plain(name: str, value: object) -> str:
    text = str(value)
    if _DELIMITERS.intersection(text):
        raise ValueError(f"{name} must not contain '&' or '='")
    return text


def _canonical_params(params: Mapping[str, Any] | None) -> str:
    if not params:
        return ""
    for key in params:
        _plain("param key", key)
    return "&".join(
        f"{key}={json.dumps(params[key], separators=(',', ':'), sort_keys=True)}"
        for key in sorted(params)
    )


def canonical_smart_link(fields: SmartLinkFields) -> str:
    query = (
        f"code={_plain('code', fields.code)}"
        f"&expires_at={_format_timestamp(fields.expires_at)}"
        f"&inviter_id={_plain('inviter_id', fields.inviter_id)}"
        f"&loop={_plain('loop', fields.loop)}"
    )
    params = _canonical_params(fields.params)
    if params:
        query = f"{query}&params={params}"
    return query


class SignatureCodec:
    """Deterministic HMAC-SHA256 signer; verification never trusts a missing signature."""

    def __init__(self, secret: str | None) -> None:
        self._secret = (secret or "").encode("utf-8")

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def sign_message(self, message: str) -> str:
        if not self._secret:
            raise SigningKeyMissingError("SMARTLINK_HMAC_SECRET is not configured")
        digest = hmac.new(self._secret, message.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_message(self, signature: object, message: str) -> bool:
        if not self._secret or not isinstance(signature, str) or not signature:
            return False
        expected = self.sign_message(message)
        return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))

    def sign(self, fields: SmartLinkFields) -> str:
        return self.sign_message(canonical_smart_link(fields))

    def verify(self, signature: object, fields: SmartLinkFields) -> bool:
        """Recompute the signature over every field; any mismatch or malformed input is invalid."""

        try:
            message = canonical_smart_link(fields)
        except (TypeError, ValueError, AttributeError):
            return False
        return self.verify_message(signature, message)


__all__ = [
    "SignatureCodec",
    "SigningKeyMissingError",
    "SmartLinkFields",
    "canonical_smart_link",
]
