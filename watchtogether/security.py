"""
Security utilities for Watch Together.
Provides input sanitization, room password hashing and security event logging.
"""
import html
import logging
import re
from typing import Optional

from passlib.context import CryptContext

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
security_logger = logging.getLogger('security')

# Room password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def sanitize_input(text: str, max_length: int = 1000) -> str:
    """
    Escape user text (chat, names, ids) for display.

    Args:
        text: Raw user input
        max_length: Length cap applied before escaping

    Returns:
        HTML-escaped text without control characters other than newline and tab
    """
    if not text:
        return ""

    text = CONTROL_CHARS.sub("", text[:max_length])
    return html.escape(text)


def hash_password(password: str) -> str:
    """Hash a room password for storage (bcrypt)."""
    return pwd_context.hash(password)


def verify_password(password: Optional[str], stored: Optional[str]) -> bool:
    """
    Check a password against a stored hash.

    A room without a stored hash accepts any password.
    """
    if not stored:
        return True
    if not password:
        return False
    try:
        return pwd_context.verify(password, stored)
    except ValueError:
        security_logger.warning("Malformed room password hash")
        return False


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")
