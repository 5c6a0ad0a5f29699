"""Password hashing with bcrypt."""

import bcrypt

DEFAULT_ROUNDS = 12

_rounds = DEFAULT_ROUNDS


def set_rounds(rounds: int) -> None:
    """Set the bcrypt cost factor for new hashes (tests lower it)."""
    global _rounds
    _rounds = rounds


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    salt = bcrypt.gensalt(rounds=_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False
