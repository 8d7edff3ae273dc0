"""EventSub webhook signature verification.

Twitch signs ``message_id + timestamp + raw_body`` with HMAC-SHA256 using
the secret we supplied when creating the subscription and sends it as
``sha256=<hex>``. The raw body must be the exact bytes received; any
re-serialization changes the digest.
"""

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def verify_signature(
    message_id: str,
    timestamp: str,
    raw_body: bytes,
    signature_header: str,
    secret: str,
) -> bool:
    """Return True only when *signature_header* matches the expected HMAC."""
    if len(signature_header) < len(SIGNATURE_PREFIX):
        return False
    if not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    try:
        received = bytes.fromhex(signature_header[len(SIGNATURE_PREFIX) :])
    except ValueError:
        return False

    message = message_id.encode() + timestamp.encode() + raw_body
    expected = hmac.new(secret.encode(), message, hashlib.sha256).digest()
    return hmac.compare_digest(expected, received)


def sign(message_id: str, timestamp: str, raw_body: bytes, secret: str) -> str:
    """Build the signature header Twitch would send for this message."""
    message = message_id.encode() + timestamp.encode() + raw_body
    return SIGNATURE_PREFIX + hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
