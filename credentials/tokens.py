"""
credentials/tokens.py -- Bearer token generation and the composite encoding.

Format: <token>.<id>
  token -- unpadded URL-safe base64 of `length` random bytes (32 bytes -> 43
           chars). The base64url alphabet has no ".", so a well-formed bearer
           holds exactly one "." between the token and the row id.
  id    -- decimal primary key of the credential row holding the digest.

Embedding the row id lets validation fetch exactly one row by primary key
instead of comparing against every live digest a user holds.

Layer rule: imports only credentials/errors.py and core/.
"""

from __future__ import annotations

import base64
import secrets
from collections.abc import Callable

from core.config import MAX_TOKEN_BYTES
from credentials.errors import ConfigurationError

DELIMITER = "."
DEFAULT_TOKEN_LENGTH = 32

# Upper bound of the 32-bit Integer id column. Larger ids cannot name a row
# and overflow the bound parameter on some backends.
MAX_CREDENTIAL_ID = 2**31 - 1

RandomSource = Callable[[int], bytes]


def validate_length(length: int) -> None:
    if isinstance(length, bool) or not isinstance(length, int):
        raise ConfigurationError(f"Token length must be an integer, got {length!r}")
    if not 1 <= length <= MAX_TOKEN_BYTES:
        raise ConfigurationError(f"Token length must be between 1 and {MAX_TOKEN_BYTES} bytes, got {length}")


def encode_token(raw: bytes) -> str:
    """Encode random bytes as unpadded URL-safe base64."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def new_token(length: int = DEFAULT_TOKEN_LENGTH, random_bytes: RandomSource = secrets.token_bytes) -> str:
    """Draw `length` bytes from random_bytes and return the encoded token."""
    validate_length(length)
    raw = random_bytes(length)
    if len(raw) != length:
        raise ConfigurationError(f"Random source returned {len(raw)} bytes, expected {length}")
    return encode_token(raw)


def compose_bearer(token: str, credential_id: int) -> str:
    return f"{token}{DELIMITER}{credential_id}"


def split_bearer(bearer: str) -> tuple[str, int] | None:
    """Split a composite bearer into (token, id). Returns None if malformed.

    Malformed means anything other than exactly two non-empty parts, or a
    second part that is not a plain run of ASCII digits. "+12", " 12" and
    "1_2" are all rejected even though int() accepts them. Ids above
    MAX_CREDENTIAL_ID are malformed too.
    """
    if not isinstance(bearer, str):
        return None
    parts = bearer.split(DELIMITER)
    if len(parts) != 2:
        return None
    token, raw_id = parts
    if not token or not raw_id or not (raw_id.isascii() and raw_id.isdigit()):
        return None
    # Length check first: int() refuses very long digit strings outright.
    if len(raw_id) > len(str(MAX_CREDENTIAL_ID)) or int(raw_id) > MAX_CREDENTIAL_ID:
        return None
    return token, int(raw_id)
