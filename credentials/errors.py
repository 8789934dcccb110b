"""
credentials/errors.py -- Exceptions raised by the credential store.

Validation failures are deliberately uniform: every rejection reason
(malformed bearer, unknown or expired row, wrong secret) surfaces as the same
Unauthorized error so callers cannot enumerate users or credentials.

Storage errors (sqlalchemy.exc.*) are not wrapped; they propagate unchanged.
"""

from __future__ import annotations


class CredentialError(Exception):
    """Base class for credential store errors."""


class Unauthorized(CredentialError):
    """Raised by the *_or_raise validators on any rejection.

    status_code and code let an HTTP host map this onto a 401 response
    without inspecting the message.
    """

    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "UNAUTHORIZED") -> None:
        super().__init__(message)


class ConfigurationError(CredentialError, ValueError):
    """Invalid cost factor, token length, max age, type, or transaction scope.

    Always raised before any row is written.
    """
