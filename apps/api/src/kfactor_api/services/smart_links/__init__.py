from .attribution import (
    ATTRIBUTION_COOKIE,
    PROCESSED_COOKIE,
    VISITOR_ID_COOKIE,
    AttributionPropagator,
    AttributionRecord,
    encode_attribution_cookie,
    extract_utm,
    parse_attribution_cookie,
)
from .links import (
    FALLBACK_RESOLUTION,
    IssuedSmartLink,
    SmartLinkCodeExhaustedError,
    SmartLinkResolution,
    SmartLinkService,
    build_deep_route,
)
from .signing import SignatureCodec, SigningKeyMissingError, SmartLinkFields

__all__ = [
    "ATTRIBUTION_COOKIE",
    "AttributionPropagator",
    "AttributionRecord",
    "FALLBACK_RESOLUTION",
    "IssuedSmartLink",
    "PROCESSED_COOKIE",
    "SignatureCodec",
    "SigningKeyMissingError",
    "SmartLinkCodeExhaustedError",
    "SmartLinkFields",
    "SmartLinkResolution",
    "SmartLinkService",
    "VISITOR_ID_COOKIE",
    "build_deep_route",
    "encode_attribution_cookie",
    "extract_utm",
    "parse_attribution_cookie",
]
