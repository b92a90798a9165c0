import re
import secrets
import string
from datetime import datetime, timezone

REFERENCE_PREFIX = "EXT"
REFERENCE_SUFFIX_LENGTH = 9
GENERATED_REFERENCE_RE = re.compile(r"^EXT-\d{13}-[0-9a-z]{9}$")
CALLER_REFERENCE_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


def generate_reference_id(now: datetime | None = None) -> str:
    """Time-prefixed, randomly suffixed reference id: ``EXT-<epoch millis>-<base36>``."""
    current = now or datetime.now(timezone.utc)
    millis = int(current.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(REFERENCE_SUFFIX_LENGTH))
    return f"{REFERENCE_PREFIX}-{millis:013d}-{suffix}"


def is_valid_caller_reference(reference_id: str) -> bool:
    return bool(CALLER_REFERENCE_RE.match(reference_id))


def normalize_email(raw_email: str) -> str:
    return raw_email.strip().lower()


def is_valid_email(email: str) -> bool:
    return len(email) <= 254 and bool(EMAIL_RE.match(email))


def hour_bucket(now: datetime) -> str:
    """UTC hour bucket key used by the rate limiter, e.g. ``2026101905``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%d%H")
