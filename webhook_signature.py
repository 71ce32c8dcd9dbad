"""
Payment notification signature verification

HMAC-SHA256 keyed with the webhook secret, compared in constant time.
Accepted header forms:
    t=1700000000,v1=<hex>[,v1=<hex>...]   Stripe scheme, signs "<t>.<raw body>"
    sha256=<hex>                           signs the raw body
    <hex>                                  signs the raw body

Timestamped headers are checked with the Stripe SDK, which also enforces the
replay tolerance on the timestamp.
"""

import hmac
import hashlib
import logging
from typing import List, Optional, Union

import stripe

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'Stripe-Signature'
SIGNATURE_SCHEMES = ('v1', 'sha256')
DEFAULT_TOLERANCE = stripe.Webhook.DEFAULT_TOLERANCE
_HEX_DIGITS = set('0123456789abcdef')


def _is_hex_digest(value: str) -> bool:
    return len(value) == hashlib.sha256().digest_size * 2 and set(value) <= _HEX_DIGITS


def _has_timestamp(signature_header: str) -> bool:
    return any(item.strip().partition('=')[0].strip() == 't' for item in signature_header.split(','))


def extract_signatures(signature_header: Optional[str]) -> List[str]:
    """Return candidate hex digests from a signature header, empty when malformed"""
    if not signature_header:
        return []

    header = signature_header.strip()
    if '=' not in header and ',' not in header:
        candidate = header.lower()
        return [candidate] if _is_hex_digest(candidate) else []

    candidates = []
    for item in header.split(','):
        key, sep, value = item.strip().partition('=')
        if not sep:
            return []
        if key.strip() in SIGNATURE_SCHEMES:
            value = value.strip().lower()
            if _is_hex_digest(value):
                candidates.append(value)
    return candidates


def compute_signature(raw_body: bytes, secret: Union[bytes, str], timestamp: Optional[int] = None) -> str:
    """Hex digest for raw_body, over "<timestamp>.<raw_body>" when a timestamp is given"""
    key = secret.encode('utf-8') if isinstance(secret, str) else secret
    payload = raw_body if timestamp is None else f"{int(timestamp)}.".encode('utf-8') + raw_body
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def _verify_timestamped(raw_body: bytes, signature_header: str, secret: Union[bytes, str],
                        tolerance: Optional[int]) -> bool:
    try:
        stripe.WebhookSignature.verify_header(
            raw_body.decode('utf-8'),
            signature_header.strip(),
            secret.decode('utf-8') if isinstance(secret, bytes) else secret,
            tolerance,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"🚫 Payment notification signature rejected: {e}")
        return False
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"🚫 Payment notification could not be verified: {e}")
        return False
    return True


def verify_signature(raw_body: bytes, signature_header: Optional[str],
                     secret: Union[bytes, str, None], tolerance: Optional[int] = DEFAULT_TOLERANCE) -> bool:
    """
    Verify that raw_body was signed with secret.

    Never raises: a missing secret, missing or malformed header, stale timestamp or
    mismatch all return False. Must run before the body is parsed.
    A tolerance of 0 or None disables the timestamp age check.
    """
    if not secret:
        logger.error("🚫 Webhook secret not configured - rejecting payment notification")
        return False

    candidates = extract_signatures(signature_header)
    if not candidates:
        logger.warning("🚫 Payment notification has a missing or malformed signature header")
        return False

    if _has_timestamp(signature_header):
        return _verify_timestamped(raw_body or b'', signature_header, secret, tolerance)

    expected = compute_signature(raw_body or b'', secret)
    matched = False
    for candidate in candidates:
        # Evaluate every candidate so timing does not depend on which one matched
        if hmac.compare_digest(expected, candidate):
            matched = True

    if not matched:
        logger.warning("🚫 Payment notification signature mismatch")
    return matched
