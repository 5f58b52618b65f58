"""Attribution carried from a smart-link click through sign-in."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

from kfactor_api.services.analytics import AnalyticsDispatcher
from kfactor_api.services.smart_links.signing import SignatureCodec


ATTRIBUTION_COOKIE = "vt_attrib"
PROCESSED_COOKIE = "vt_attrib_processed"
VISITOR_ID_COOKIE = "visitor_id"
ATTRIBUTION_VERSION = 1
UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


@dataclass(frozen=True)
class AttributionRecord:
    """Transient attribution for an inviter's smart link; lives only in the cookie."""

    inviter_id: str
    loop: str
    smart_link_code: str
    utm: dict[str, str] = field(default_factory=dict)

    def as_payload(self) -> dict[str, str]:
        payload = {
            "inviter_id": self.inviter_id,
            "loop": self.loop,
            "smart_link_code": self.smart_link_code,
        }
        payload.update({key: value for key, value in self.utm.items() if key in UTM_KEYS and value})
        return payload


def extract_utm(query_params: Mapping[str, Any]) -> dict[str, str]:
    """Pick UTM tags off the current request, dropping blanks."""

    utm: dict[str, str] = {}
    for key in UTM_KEYS:
        value = query_params.get(key)
        if isinstance(value, str) and value:
            utm[key] = value
    return utm


def _signing_message(payload: Mapping[str, str]) -> str:
    return "v{version}|{body}".format(
        version=ATTRIBUTION_VERSION,
        body=json.dumps(dict(payload), sort_keys=True, separators=(",", ":")),
    )


def encode_attribution_cookie(record: AttributionRecord, codec: SignatureCodec) -> str:
    payload = record.as_payload()
    cookie = dict(payload)
    cookie["v"] = ATTRIBUTION_VERSION
    cookie["sig"] = codec.sign_message(_signing_message(payload))
    encoded = base64.urlsafe_b64encode(json.dumps(cookie, separators=(",", ":")).encode("utf-8"))
    # unpadded base64url keeps the value a legal cookie token without quoting
    return encoded.decode("ascii").rstrip("=")


def parse_attribution_cookie(raw: str | None, codec: SignatureCodec) -> AttributionRecord | None:
    """Pure parse of the cookie; unsigned, tampered or malformed values yield ``None``."""

    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (TypeError, ValueError, binascii.Error):
        logger.debug("Discarding undecodable attribution cookie")
        return None
    if not isinstance(decoded, dict) or decoded.get("v") != ATTRIBUTION_VERSION:
        return None

    payload: dict[str, str] = {}
    for key in ("inviter_id", "loop", "smart_link_code", *UTM_KEYS):
        value = decoded.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            return None
        payload[key] = value

    if not all(payload.get(key) for key in ("inviter_id", "loop", "smart_link_code")):
        return None
    if not codec.verify_message(decoded.get("sig"), _signing_message(payload)):
        logger.warning("Rejected attribution cookie with invalid signature")
        return None

    return AttributionRecord(
        inviter_id=payload["inviter_id"],
        loop=payload["loop"],
        smart_link_code=payload["smart_link_code"],
        utm={key: payload[key] for key in UTM_KEYS if key in payload},
    )


class AttributionPropagator:
    """Emits ``invite.opened`` once per marker window and ``invite.joined`` after sign-in."""

    def __init__(self, codec: SignatureCodec, dispatcher: AnalyticsDispatcher) -> None:
        self._codec = codec
        self._dispatcher = dispatcher

    def read(self, cookies: Mapping[str, str]) -> AttributionRecord | None:
        return parse_attribution_cookie(cookies.get(ATTRIBUTION_COOKIE), self._codec)

    def track_opened(self, cookies: Mapping[str, str]) -> bool:
        """Return ``True`` when an event was emitted and the caller must set the processed marker."""

        if cookies.get(PROCESSED_COOKIE):
            return False
        attribution = self.read(cookies)
        if attribution is None:
            return False

        self._dispatcher.dispatch(
            "invite.opened",
            {
                "smart_link_code": attribution.smart_link_code,
                "loop": attribution.loop,
                "inviter_id": attribution.inviter_id,
            },
            anon_id=cookies.get(VISITOR_ID_COOKIE),
        )
        return True

    def track_joined(self, cookies: Mapping[str, str], *, user_id: str) -> AttributionRecord | None:
        attribution = self.read(cookies)
        if attribution is None:
            return None

        self._dispatcher.dispatch(
            "invite.joined",
            {
                "smart_link_code": attribution.smart_link_code,
                "loop": attribution.loop,
                "inviter_id": attribution.inviter_id,
                "invitee_id": user_id,
            },
            user_id=user_id,
            anon_id=cookies.get(VISITOR_ID_COOKIE),
        )
        logger.info(
            "Tracked invite join",
            inviter_id=attribution.inviter_id,
            invitee_id=user_id,
            loop=attribution.loop,
        )
        return attribution


__all__ = [
    "ATTRIBUTION_COOKIE",
    "AttributionPropagator",
    "AttributionRecord",
    "PROCESSED_COOKIE",
    "UTM_KEYS",
    "VISITOR_ID_COOKIE",
    "encode_attribution_cookie",
    "extract_utm",
    "parse_attribution_cookie",
]
