"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for the credential store happen here. No
module should call os.getenv() or os.environ.get() directly -- import
get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from CREDSTORE_* environment
      variables and an optional .env file. Type coercion and validation are
      built in (e.g. CREDSTORE_PASSWORD_COST=12 -> password_cost: int = 12).

  @model_validator(mode="after"): Rejects out-of-range cost factors and token
      lengths at startup, before any store is constructed. Weak but legal
      settings (low password cost, non-expiring tokens) log a warning.

Layer rule: core/ is the kernel. This module may not import from credentials/.
Cost overrides are returned keyed by the credential type's string value so
the mapping to CredentialType happens in credentials/hashing.py.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credstore.config")

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'credentials.db'}"

# bcrypt accepts 4..31 log rounds; 0..3 are allowed here and raised to 4 by
# the hasher so the stored cost table matches the documented defaults.
MAX_COST = 31

# 54 random bytes encode to 72 base64url characters, bcrypt's input limit.
MAX_TOKEN_BYTES = 54

# Password cost below which startup logs a warning.
RECOMMENDED_PASSWORD_COST = 10


class Settings(BaseSettings):
    """Credential store settings loaded from environment variables and .env.

    All fields have defaults so Settings() can be instantiated in tests
    without a real .env file.

    Environment variable name mapping: CREDSTORE_ + uppercased field name.
    E.g. `password_cost` reads from CREDSTORE_PASSWORD_COST.
    """

    model_config = SettingsConfigDict(
        env_prefix="CREDSTORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    db_url: str = DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Hash cost factors (bcrypt log rounds), one per credential type
    # ------------------------------------------------------------------

    password_cost: int = RECOMMENDED_PASSWORD_COST
    # Third-party identity is vouched for externally; the stored subject hash
    # only needs to be one-way, not slow.
    third_party_cost: int = 0
    # Session tokens are high-entropy and short-lived.
    session_token_cost: int = 1
    privileged_token_cost: int = 10

    # ------------------------------------------------------------------
    # Token minting
    # ------------------------------------------------------------------

    token_length: int = 32
    # One year. 0 mints non-expiring tokens.
    token_max_age_minutes: int = 525600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        """Fail fast on cost factors or token settings the hasher cannot honour."""
        for name, cost in self.cost_overrides().items():
            if not 0 <= cost <= MAX_COST:
                raise ValueError(f"Cost factor for {name} must be between 0 and {MAX_COST}, got {cost}.")
        if not 1 <= self.token_length <= MAX_TOKEN_BYTES:
            raise ValueError(f"token_length must be between 1 and {MAX_TOKEN_BYTES}, got {self.token_length}.")
        if self.token_max_age_minutes < 0:
            raise ValueError("token_max_age_minutes must not be negative.")
        if self.password_cost < RECOMMENDED_PASSWORD_COST:
            logger.warning(
                "password_cost=%d is below the recommended %d. Use low costs in tests only.",
                self.password_cost,
                RECOMMENDED_PASSWORD_COST,
            )
        if self.token_max_age_minutes == 0:
            logger.warning("token_max_age_minutes=0: issued tokens will never expire.")
        return self

    def cost_overrides(self) -> dict[str, int]:
        """Return the configured cost table keyed by credential type value."""
        return {
            "Password": self.password_cost,
            "ThirdParty": self.third_party_cost,
            "SessionToken": self.session_token_cost,
            "PrivilegedToken": self.privileged_token_cost,
        }


@lru_cache
def get_settings() -> Settings:
    """Return the Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
