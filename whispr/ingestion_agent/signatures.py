"""
Webhook signature verification.

Both functions raise ``SignatureVerificationError`` on any mismatch and
return ``None`` on success, so callers cannot accidentally ignore a failure.
"""

import hashlib
import hmac
import time
from typing import Optional, Union

from ..common_tools.errors import SignatureVerificationError

SLACK_SIGNATURE_VERSION = "v0"
DEFAULT_TOLERANCE_SECONDS = 300


def _as_bytes(body: Union[bytes, str]) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def compute_slack_signature(secret: str, timestamp: str, body: Union[bytes, str]) -> str:
    basestring = f"{SLACK_SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + _as_bytes(body)
    digest = hmac.new(secret.encode("utf-8"), basestring, hashlib.sha256).hexdigest()
    return f"{SLACK_SIGNATURE_VERSION}={digest}"


def verify_slack_signature(secret: Optional[str], timestamp: Optional[str], body: Union[bytes, str],
                           signature: Optional[str], now: Optional[float] = None,
                           tolerance: int = DEFAULT_TOLERANCE_SECONDS) -> None:
    """
    Verify an ``X-Slack-Signature`` header.

    Args:
        secret: The tenant's Slack signing secret
        timestamp: ``X-Slack-Request-Timestamp`` header value
        body: Raw request body exactly as received
        signature: ``X-Slack-Signature`` header value
        now: Current epoch seconds (defaults to the wall clock)
        tolerance: Maximum request age in seconds; older requests are replays
    """
    if not secret:
        raise SignatureVerificationError("No Slack signing secret configured")
    if not timestamp or not signature:
        raise SignatureVerificationError("Missing Slack signature headers")
    try:
        request_time = int(timestamp)
    except ValueError:
        raise SignatureVerificationError(f"Invalid Slack request timestamp: {timestamp!r}") from None

    now = time.time() if now is None else now
    if abs(now - request_time) > tolerance:
        raise SignatureVerificationError("Slack request timestamp outside the replay window")

    expected = compute_slack_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature):
        raise SignatureVerificationError("Slack signature mismatch")


def compute_github_signature(secret: str, body: Union[bytes, str]) -> str:
    digest = hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_github_signature(secret: Optional[str], body: Union[bytes, str], signature: Optional[str]) -> None:
    """Verify an ``X-Hub-Signature-256`` header."""
    if not secret:
        raise SignatureVerificationError("No GitHub webhook secret configured")
    if not signature or not signature.startswith("sha256="):
        raise SignatureVerificationError("Missing or malformed GitHub signature header")
    if not hmac.compare_digest(compute_github_signature(secret, body), signature):
        raise SignatureVerificationError("GitHub signature mismatch")
