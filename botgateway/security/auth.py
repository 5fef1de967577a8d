from __future__ import annotations
import hashlib
from botgateway.config import Settings
from botgateway.security.signatures import constant_time_equals

ANONYMOUS = "anonymous"

def key_fingerprint(key: str) -> str:
    return "key:" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]

def client_principal(settings: Settings, provided: str | None) -> str | None:
    """Management API principal for ``X-API-Key``, or None when the key is refused.

    The principal is a fingerprint so raw keys stay out of rate-limit buckets
    and logs. With auth disabled every caller is anonymous.
    """
    if not settings.require_client_auth:
        return key_fingerprint(provided) if provided else ANONYMOUS
    if not provided:
        return None
    for k in settings.client_api_keys:
        if constant_time_equals(k, provided):
            return key_fingerprint(k)
    return None
