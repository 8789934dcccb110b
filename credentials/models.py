"""
credentials/models.py -- Domain types for credential records.

Pattern: Data class (pure data container, zero logic beyond projection).
The store does the work; these types own the domain shape.

Layer rule: no imports from other credentials/ modules.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class CredentialType(str, Enum):
    """Closed set of credential kinds. Values are what the type column stores."""

    PASSWORD = "Password"
    THIRD_PARTY = "ThirdParty"
    SESSION_TOKEN = "SessionToken"
    PRIVILEGED_TOKEN = "PrivilegedToken"


# Kinds that generate_and_save_token() will mint.
TOKEN_TYPES: frozenset[CredentialType] = frozenset({CredentialType.SESSION_TOKEN, CredentialType.PRIVILEGED_TOKEN})


@dataclass(frozen=True)
class PublicCredential:
    """The non-secret projection of a credential, safe to hand to callers."""

    id: int
    created_at: datetime
    user_id: str
    type: CredentialType
    expires_at: datetime | None = None  # None = never expires


@dataclass(frozen=True)
class Credential:
    """A persisted credential row.

    secret is always a bcrypt digest. The plaintext password or raw token is
    never stored and never reaches this type.
    """

    id: int
    created_at: datetime
    user_id: str
    type: CredentialType
    secret: str
    expires_at: datetime | None = None

    def public(self) -> PublicCredential:
        return PublicCredential(
            id=self.id,
            created_at=self.created_at,
            user_id=self.user_id,
            type=self.type,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class MintedToken:
    """A freshly generated bearer secret and its digest.

    token is shown to the caller exactly once; only hash is persisted.
    """

    token: str
    hash: str
