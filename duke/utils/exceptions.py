"""Custom exceptions for the Senior Duke portal"""

from typing import Optional


class PortalError(Exception):
    """Base exception for the portal"""
    pass


class ConfigError(PortalError):
    """Configuration error"""
    pass


class NotFoundError(PortalError):
    """No such record"""
    pass


class UnauthenticatedError(PortalError):
    """No valid session, or credentials rejected"""
    pass


class NoUserError(UnauthenticatedError):
    """No credential record for the given email"""

    def __init__(self, message: str = "No matching username found"):
        super().__init__(message)


class WrongPasswordError(UnauthenticatedError):
    """Credential record exists but the password does not match"""

    def __init__(self, message: str = "Incorrect password for username"):
        super().__init__(message)


class UnauthorisedError(PortalError):
    """Session valid but the capability was denied"""
    pass


class ConflictError(PortalError):
    """Duplicate email, occupied slot, existing org admin, no credits left"""
    pass


class InvalidInputError(PortalError):
    """Malformed input or a transition the state machine does not allow"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class LockTimeoutError(PortalError):
    """A per-key write lock could not be acquired in time"""

    def __init__(self, key: str, timeout: float):
        self.key = key
        self.timeout = timeout
        super().__init__(f"Could not acquire lock {key} within {timeout}s")


class StoreError(PortalError):
    """Base for keyed store failures"""
    pass


class BackendError(StoreError):
    """Underlying filesystem failure"""
    pass


class SerializeError(StoreError):
    """A value could not be serialised"""
    pass


class DeserializeError(StoreError):
    """Stored bytes could not be read back as the expected type"""
    pass
