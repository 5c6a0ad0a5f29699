"""Server-side input validation shared by every user-supplied string."""

import re
import secrets
import string
from pathlib import PurePath
from typing import Optional
from uuid import UUID

from .exceptions import InvalidInputError

ALLOWED_PUNCTUATION = frozenset("@.-_! ")
MIN_PASSWORD_LENGTH = 6
GENERATED_PASSWORD_LENGTH = 8

_FILENAME_RESERVED = re.compile(r'[\x00-\x1f\x7f/\\:*?"<>|]')
_WINDOWS_RESERVED = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


def is_optional_string_server_valid(s: str) -> bool:
    """Alphanumerics plus @ . - _ ! and space. The empty string passes."""
    return all(c.isalnum() or c in ALLOWED_PUNCTUATION for c in s)


def is_string_server_valid(s: str) -> bool:
    if not s or not s.strip():
        return False
    return is_optional_string_server_valid(s)


def is_email_valid(s: str) -> bool:
    if not is_string_server_valid(s):
        return False
    user, sep, host = s.partition("@")
    if not sep:
        return False
    return bool(user) and bool(host) and "@" not in host and "." in host


# Passwords are never displayed so they skip the character restrictions.
def is_password_valid(p: str) -> bool:
    return len(p) >= MIN_PASSWORD_LENGTH


def gen_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def require_string(value: str, field: str) -> str:
    if not is_string_server_valid(value):
        raise InvalidInputError(f"Invalid {field} provided", field=field)
    return value


def require_optional_string(value: Optional[str], field: str) -> str:
    value = value or ""
    if not is_optional_string_server_valid(value):
        raise InvalidInputError(f"Invalid {field} provided", field=field)
    return value


def require_email(value: str) -> str:
    if not is_email_valid(value):
        raise InvalidInputError("Invalid email provided", field="email")
    return value


def require_password(value: str) -> str:
    if not is_password_valid(value):
        raise InvalidInputError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password"
        )
    return value


def parse_uuid(value: str, field: str = "id") -> UUID:
    try:
        return UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        raise InvalidInputError(f"Invalid {field}", field=field)


def sanitize_filename(name: str) -> str:
    """
    Make an uploaded filename safe to join onto an asset directory.

    Drops any client-side directory part, replaces control and reserved
    characters with "_", strips leading dots and trailing dots/spaces,
    and renames Windows device names. Returns "" if nothing usable is left.
    """
    base = PurePath(name.replace("\\", "/")).name
    cleaned = _FILENAME_RESERVED.sub("_", base).lstrip(".").rstrip(". ")
    if not cleaned:
        return ""
    stem = cleaned.split(".", 1)[0]
    if stem.upper() in _WINDOWS_RESERVED:
        cleaned = "_" + cleaned
    return cleaned[:255]
