from __future__ import annotations
import base64
import hashlib
import hmac
import secrets

def constant_time_equals(a: str, b: str) -> bool:
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

def hmac_hex(secret: str, payload: bytes, digest=hashlib.sha256) -> str:
    return hmac.new(secret.encode("utf-8"), payload, digest).hexdigest()

def hmac_b64(secret: str, payload: bytes, digest=hashlib.sha256) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), payload, digest).digest()).decode("ascii")

def sha1_sorted(*parts: str) -> str:
    """SHA1 over the lexicographically sorted, concatenated parts (WeCom style)."""
    return hashlib.sha1("".join(sorted(parts)).encode("utf-8")).hexdigest()
