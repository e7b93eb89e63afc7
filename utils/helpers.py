"""Small shared helpers: identifiers, timestamps and text formatting"""

import html
import secrets
import string
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from config import Config

_BASE36 = string.digits + string.ascii_uppercase


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding expects a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_order_ref(now_ms: Optional[int] = None) -> str:
    """
    Human-facing order reference: PREFIX-<base36 millisecond clock>-<4 random chars>

    Example: 808-LZ3K9Q1A-7XQ2
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"{Config.ORDER_REF_PREFIX}-{to_base36(now_ms)}-{suffix}"


def generate_public_id(prefix: str = "") -> str:
    """Opaque identifier for orders, transactions and other documents"""
    token = uuid.uuid4().hex
    return f"{prefix}{token}" if prefix else token


def is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def escape_html(text: Optional[str]) -> str:
    """Escape text for Telegram HTML parse mode"""
    if text is None:
        return ""
    return html.escape(str(text), quote=True)
