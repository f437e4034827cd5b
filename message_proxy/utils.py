"""
Utility functions for the message proxy API.
"""

import hmac
import logging
from typing import Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)


def verify_token(provided: Optional[str], expected: str) -> bool:
    """
    Compare a client-supplied token with the shared API token.

    Args:
        provided: Token from the request (`t` parameter or socket handshake)
        expected: API_TOKEN

    Returns:
        True if the token matches, False otherwise (including missing tokens)
    """
    if not provided or not expected:
        logger.debug("Token missing")
        return False

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"Token verification: {'valid' if is_valid else 'invalid'}")
    return is_valid


def notification_context(identifier: Optional[str]) -> str:
    """URL-escape a sender identifier for use as a notification callback context."""
    if identifier is None:
        return "Name Failure"
    return quote(identifier, safe="@+")
