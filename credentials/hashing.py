"""
credentials/hashing.py -- bcrypt secret hashing with a cost table per type.

Security design decisions:
  bcrypt directly (no passlib wrapper). Every secret the store persists, from
      low-entropy passwords to 256-bit session tokens, goes through the same
      hash/compare pair; only the work factor differs per credential type.

  Cost table: supplied at construction as a partial override merged over
      DEFAULT_COSTS and resolved exhaustively, so a store can never be built
      with a credential type that has no cost.

  bcrypt floor: bcrypt rejects fewer than 4 log rounds. Configured costs of
      0-3 (ThirdParty and SessionToken by default) hash at 4 rounds.

  72-byte limit: bcrypt only reads the first 72 bytes of input and current
      releases raise on longer input. hash() refuses such input up front
      with ConfigurationError; compare() reports it as a mismatch.

Layer rule: imports only credentials/models.py and credentials/errors.py.
"""

from __future__ import annotations

from collections.abc import Mapping

import bcrypt

from credentials.errors import ConfigurationError
from credentials.models import CredentialType

BCRYPT_MIN_ROUNDS = 4
BCRYPT_MAX_ROUNDS = 31
BCRYPT_MAX_INPUT_BYTES = 72

DEFAULT_COSTS: dict[CredentialType, int] = {
    CredentialType.PASSWORD: 10,
    CredentialType.THIRD_PARTY: 0,
    CredentialType.SESSION_TOKEN: 1,
    CredentialType.PRIVILEGED_TOKEN: 10,
}


def resolve_cost_table(overrides: Mapping[CredentialType | str, int] | None = None) -> dict[CredentialType, int]:
    """Merge overrides over DEFAULT_COSTS and validate every entry.

    Keys may be CredentialType members or their string values (as produced by
    Settings.cost_overrides()). Unknown keys and out-of-range costs raise
    ConfigurationError.
    """
    table = dict(DEFAULT_COSTS)
    for key, cost in (overrides or {}).items():
        try:
            cred_type = CredentialType(key)
        except ValueError:
            raise ConfigurationError(f"Unknown credential type in cost table: {key!r}") from None
        table[cred_type] = cost

    for cred_type in CredentialType:
        if cred_type not in table:
            raise ConfigurationError(f"No cost factor configured for {cred_type.value}")
        validate_cost(table[cred_type])
    return table


def validate_cost(cost: int) -> None:
    if isinstance(cost, bool) or not isinstance(cost, int):
        raise ConfigurationError(f"Cost factor must be an integer, got {cost!r}")
    if not 0 <= cost <= BCRYPT_MAX_ROUNDS:
        raise ConfigurationError(f"Cost factor must be between 0 and {BCRYPT_MAX_ROUNDS}, got {cost}")


class SecretHasher:
    """One-way hash plus constant-time compare, cost looked up per credential type.

    Usage:
        hasher = SecretHasher({CredentialType.PASSWORD: 12})
        digest = hasher.hash_for(CredentialType.PASSWORD, "hunter2")
        hasher.compare("hunter2", digest)  # True
    """

    def __init__(self, costs: Mapping[CredentialType | str, int] | None = None) -> None:
        self.costs: dict[CredentialType, int] = resolve_cost_table(costs)
        self._dummy_digests: dict[CredentialType, str] = {}

    def cost_for(self, cred_type: CredentialType) -> int:
        return self.costs[CredentialType(cred_type)]

    def hash(self, plaintext: str, cost: int) -> str:
        """Return a bcrypt digest of plaintext using `cost` log rounds."""
        validate_cost(cost)
        data = plaintext.encode("utf-8")
        if len(data) > BCRYPT_MAX_INPUT_BYTES:
            raise ConfigurationError(f"Secret exceeds bcrypt's {BCRYPT_MAX_INPUT_BYTES}-byte input limit.")
        rounds = max(cost, BCRYPT_MIN_ROUNDS)
        return bcrypt.hashpw(data, bcrypt.gensalt(rounds=rounds)).decode("utf-8")

    def hash_for(self, cred_type: CredentialType, plaintext: str) -> str:
        return self.hash(plaintext, self.cost_for(cred_type))

    def compare(self, plaintext: str, digest: str) -> bool:
        """Return True if plaintext matches digest. Never raises on bad input."""
        data = plaintext.encode("utf-8")
        if len(data) > BCRYPT_MAX_INPUT_BYTES:
            return False
        try:
            return bcrypt.checkpw(data, digest.encode("utf-8"))
        except ValueError:
            # Malformed or truncated digest.
            return False

    def dummy_digest(self, cred_type: CredentialType = CredentialType.PASSWORD) -> str:
        """Digest at cred_type's cost for timing equalization when no row matches.

        Computed on first use per type and cached, so only the first miss pays
        for generating it.
        """
        cred_type = CredentialType(cred_type)
        if cred_type not in self._dummy_digests:
            self._dummy_digests[cred_type] = self.hash_for(cred_type, "credstore_timing_dummy")
        return self._dummy_digests[cred_type]
