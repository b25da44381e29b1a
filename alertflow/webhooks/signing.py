"""
Webhook payload construction and HMAC signing.
"""

import hashlib
import hmac
import json
import uuid
from datetime import datetime
from typing import Any, Optional, Union

from alertflow.timeutil import to_iso, utc_now

SIGNATURE_PREFIX = "sha256="
PAYLOAD_VERSION = "1.0"
SENSITIVE_FIELDS = frozenset({"password", "token", "secret", "apiKey"})

Payload = Union[dict[str, Any], str, bytes]


def sanitize(data: Any) -> Any:
    """Return a copy of ``data`` without sensitive keys, at any depth."""
    if isinstance(data, dict):
        return {k: sanitize(v) for k, v in data.items() if k not in SENSITIVE_FIELDS}
    if isinstance(data, list):
        return [sanitize(item) for item in data]
    return data


def build_payload(
    webhook_id: str,
    event: str,
    data: dict[str, Any],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Wrap event data in the outbound webhook envelope."""
    return {
        "id": str(uuid.uuid4()),
        "event": event,
        "timestamp": to_iso(now or utc_now()),
        "webhook": {"id": webhook_id, "version": PAYLOAD_VERSION},
        "data": sanitize(data),
    }


def canonical_body(payload: Payload) -> bytes:
    """
    Serialize a payload to the exact bytes that are signed and sent.

    Dicts become compact JSON with sorted keys; str and bytes pass through.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode(
        "utf-8"
    )


def sign(payload: Payload, secret: str) -> str:
    """
    Compute the signature header value for a payload.

    Returns:
        ``sha256=<hex digest>``
    """
    if not secret:
        raise ValueError("A signing secret is required")
    digest = hmac.new(
        secret.encode("utf-8"), canonical_body(payload), hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(payload: Payload, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a signature in constant time. Missing inputs never verify."""
    if not secret or not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
