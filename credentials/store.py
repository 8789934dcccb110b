"""
credentials/store.py -- The credential store: mint, persist and validate secrets.

Pattern: Repository + Data Mapper (same as the generic Repository it composes).
CredentialStore owns the credential rules; Repository owns the SQL;
_row_to_credential is the mapper. Host code never touches SQL directly.

Validation protocols, chosen per credential type:
  Password        -- one live row per user, looked up by (user_id, type).
  SessionToken,
  PrivilegedToken -- id-embedded bearer "<token>.<id>", one row fetched by
                     primary key. validate_token() / validate_token_or_raise().
  ThirdParty      -- fan-out across every live row of (user_id, type).
                     validate_credential() works for any type and also serves
                     callers that hold several concurrent secrets of one kind.

Every rejection (malformed bearer, missing or expired row, wrong secret)
collapses to None / False, or to one Unauthorized error in the *_or_raise
variants. The reason is logged at DEBUG only.

Expiry is lazy: rows past expires_at are filtered in the WHERE clause at
validation time and are never deleted here.

Security:
  All queries use bound parameters. Raw tokens, passwords and digests are
  never logged.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    func,
    or_,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.elements import ColumnElement

from core.config import DEFAULT_DB_URL, Settings, get_settings
from credentials.errors import ConfigurationError, Unauthorized
from credentials.hashing import SecretHasher
from credentials.models import TOKEN_TYPES, Credential, CredentialType, MintedToken, PublicCredential
from credentials.repository import Repository, utcnow
from credentials.tokens import DEFAULT_TOKEN_LENGTH, RandomSource, compose_bearer, new_token, split_bearer, validate_length

logger = logging.getLogger("credstore.credentials")

# One year.
DEFAULT_MAX_AGE_MINUTES = 525600

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_credentials = Table(
    "credentials",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("user_id", String(255), nullable=False),
    Column("type", String(32), nullable=False),  # CredentialType value
    Column("secret", Text, nullable=False),  # bcrypt digest, never plaintext
    Column("expires_at", DateTime(timezone=True)),  # NULL = never expires
    Index("credentials_user_id_type", "user_id", "type"),
    Index("credentials_expires_at", "expires_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so validators can read while a password is replaced.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class Rejection(str, Enum):
    """Why a validation attempt failed. Logged, never returned to callers."""

    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every timestamp is written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _live(now: datetime) -> ColumnElement:
    return or_(_credentials.c.expires_at.is_(None), _credentials.c.expires_at > now)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class CredentialStore:
    """Issues, stores and validates credentials in the `credentials` table.

    Usage:
        store = CredentialStore("sqlite:///creds.db")
        with store.transaction() as conn:
            store.set_password(conn, "u1", "correct horse")
        store.validate_password("u1", "correct horse")           # True
        bearer = store.generate_and_save_token("u1", CredentialType.SESSION_TOKEN)
        store.validate_token(bearer, CredentialType.SESSION_TOKEN)  # PublicCredential
        store.close()

    clock and random_bytes are injectable for tests; both default to the real
    UTC clock and secrets.token_bytes.
    """

    def __init__(
        self,
        db_url: str = DEFAULT_DB_URL,
        costs: Mapping[CredentialType | str, int] | None = None,
        clock: Callable[[], datetime] = utcnow,
        random_bytes: RandomSource = secrets.token_bytes,
        engine: Engine | None = None,
    ) -> None:
        # Resolve the cost table before touching the database.
        self.hasher = SecretHasher(costs)
        self.clock = clock
        self.random_bytes = random_bytes

        if engine is None:
            connect_args: dict = {}
            if db_url.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            engine = create_engine(db_url, connect_args=connect_args)
            if db_url.startswith("sqlite"):
                event.listen(engine, "connect", _set_wal_mode)
        self.engine: Engine = engine
        metadata.create_all(self.engine)

        self.repo: Repository[Credential] = Repository(
            self.engine,
            _credentials,
            _row_to_credential,
            id_field="id",
            created_field="created_at",
            clock=self._now,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs) -> CredentialStore:
        """Build a store from Settings (defaults to the get_settings() singleton)."""
        settings = settings or get_settings()
        return cls(db_url=settings.db_url, costs=settings.cost_overrides(), **kwargs)

    def _now(self) -> datetime:
        return _as_utc(self.clock())

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a Connection inside one database transaction.

        Pass it as `conn` to any store method to make several operations
        atomic. Commits on normal exit, rolls back on exception.
        """
        with self.repo.transaction() as conn:
            yield conn

    # ------------------------------------------------------------------
    # Token minting
    # ------------------------------------------------------------------

    def generate_token(self, cred_type: CredentialType, length: int = DEFAULT_TOKEN_LENGTH) -> MintedToken:
        """Draw `length` random bytes, encode them, and hash at the type's cost.

        The returned token is the only copy of the plaintext; persist
        MintedToken.hash, never MintedToken.token.
        """
        cred_type = _token_type(cred_type)
        validate_length(length)
        token = new_token(length, self.random_bytes)
        return MintedToken(token=token, hash=self.hasher.hash_for(cred_type, token))

    def generate_and_save_token(
        self,
        user_id: str,
        cred_type: CredentialType,
        max_age_minutes: int | None = DEFAULT_MAX_AGE_MINUTES,
        length: int = DEFAULT_TOKEN_LENGTH,
        conn: Connection | None = None,
    ) -> str:
        """Mint a token, store its digest, and return the bearer "<token>.<id>".

        max_age_minutes of 0 or None stores a non-expiring token. Arguments
        are validated and the token hashed before any row is written.
        """
        if max_age_minutes is not None and (
            isinstance(max_age_minutes, bool) or not isinstance(max_age_minutes, int) or max_age_minutes < 0
        ):
            raise ConfigurationError(f"max_age_minutes must be a non-negative integer, got {max_age_minutes!r}")
        minted = self.generate_token(cred_type, length)

        now = self._now()
        expires_at = now + timedelta(minutes=max_age_minutes) if max_age_minutes else None
        cred = self.repo.insert(
            {
                "created_at": now,
                "user_id": user_id,
                "type": CredentialType(cred_type).value,
                "secret": minted.hash,
                "expires_at": expires_at,
            },
            conn,
        )
        logger.info(
            "Issued %s credential_id=%s user_id=%s expires_at=%s",
            cred.type.value,
            cred.id,
            user_id,
            expires_at.isoformat() if expires_at else "never",
        )
        return compose_bearer(minted.token, cred.id)

    # ------------------------------------------------------------------
    # Token validation (id-embedded)
    # ------------------------------------------------------------------

    def _match_token(
        self,
        bearer: str,
        cred_type: CredentialType,
        user_id: str | None,
        conn: Connection | None,
    ) -> tuple[Credential | None, Rejection | None]:
        parts = split_bearer(bearer)
        if parts is None:
            return None, Rejection.MALFORMED
        token, credential_id = parts

        criteria = [
            _credentials.c.id == credential_id,
            _credentials.c.type == CredentialType(cred_type).value,
            _live(self._now()),
        ]
        if user_id is not None:
            criteria.append(_credentials.c.user_id == user_id)
        cred = self.repo.fetch(and_(*criteria), conn)
        if cred is None:
            self.hasher.compare(token, self.hasher.dummy_digest(cred_type))
            return None, Rejection.NOT_FOUND
        if not self.hasher.compare(token, cred.secret):
            return None, Rejection.MISMATCH
        return cred, None

    def validate_token(
        self,
        bearer: str,
        cred_type: CredentialType,
        user_id: str | None = None,
        conn: Connection | None = None,
    ) -> PublicCredential | None:
        """Return the public record for a valid bearer, None on any failure."""
        cred, reason = self._match_token(bearer, cred_type, user_id, conn)
        if cred is None:
            logger.debug("Rejected %s token: %s", CredentialType(cred_type).value, reason.value)
            return None
        return cred.public()

    def validate_token_or_raise(
        self,
        bearer: str,
        cred_type: CredentialType,
        user_id: str | None = None,
        conn: Connection | None = None,
    ) -> PublicCredential:
        """Like validate_token(), but raise Unauthorized instead of returning None."""
        cred = self.validate_token(bearer, cred_type, user_id, conn)
        if cred is None:
            raise Unauthorized()
        return cred

    # ------------------------------------------------------------------
    # Fan-out validation
    # ------------------------------------------------------------------

    def validate_credential(
        self,
        user_id: str,
        cred_type: CredentialType,
        plaintext: str,
        conn: Connection | None = None,
    ) -> PublicCredential | None:
        """Accept plaintext if it matches any live credential of (user_id, type).

        Cost is one hash comparison per live row. For minted tokens the
        plaintext is the raw token, i.e. the part before the ".".
        """
        cred_type = CredentialType(cred_type)
        rows = self.repo.query(
            and_(
                _credentials.c.user_id == user_id,
                _credentials.c.type == cred_type.value,
                _live(self._now()),
            ),
            conn,
        )
        if not rows:
            self.hasher.compare(plaintext, self.hasher.dummy_digest(cred_type))
            logger.debug("Rejected %s credential: %s", cred_type.value, Rejection.NOT_FOUND.value)
            return None
        for cred in rows:
            if self.hasher.compare(plaintext, cred.secret):
                return cred.public()
        logger.debug("Rejected %s credential: %s", cred_type.value, Rejection.MISMATCH.value)
        return None

    def validate_credential_or_raise(
        self,
        user_id: str,
        cred_type: CredentialType,
        plaintext: str,
        conn: Connection | None = None,
    ) -> PublicCredential:
        cred = self.validate_credential(user_id, cred_type, plaintext, conn)
        if cred is None:
            raise Unauthorized()
        return cred

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def set_password(
        self,
        conn: Connection,
        user_id: str,
        password: str,
        expires_at: datetime | None = None,
    ) -> PublicCredential:
        """Replace the user's password: delete every Password row, insert one.

        Must be called with a Connection from store.transaction(); the delete
        and insert commit together or not at all. On PostgreSQL a
        transaction-scoped advisory lock on the user id serializes concurrent
        replacements. SQLite serializes them through its write lock, taken by
        the DELETE.
        """
        if conn is None or not conn.in_transaction():
            raise ConfigurationError("set_password() must run inside store.transaction()")
        # Hash before the delete so a hashing failure leaves the old row alone.
        secret = self.hasher.hash_for(CredentialType.PASSWORD, password)

        if conn.dialect.name == "postgresql":
            conn.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"credentials:password:{user_id}"},
            )
        removed = self.repo.hard_delete({"user_id": user_id, "type": CredentialType.PASSWORD.value}, conn)
        cred = self.repo.insert(
            {
                "created_at": self._now(),
                "user_id": user_id,
                "type": CredentialType.PASSWORD.value,
                "secret": secret,
                "expires_at": _as_utc(expires_at),
            },
            conn,
        )
        logger.info("Password set credential_id=%s user_id=%s replaced=%d", cred.id, user_id, removed)
        return cred.public()

    def _match_password(self, user_id: str, password: str, conn: Connection | None) -> Credential | None:
        cred = self.repo.fetch(
            and_(
                _credentials.c.user_id == user_id,
                _credentials.c.type == CredentialType.PASSWORD.value,
                _live(self._now()),
            ),
            conn,
        )
        if cred is None:
            # Equalize timing -- do NOT return before running bcrypt.
            self.hasher.compare(password, self.hasher.dummy_digest())
            logger.debug("Rejected password: %s", Rejection.NOT_FOUND.value)
            return None
        if not self.hasher.compare(password, cred.secret):
            logger.debug("Rejected password: %s", Rejection.MISMATCH.value)
            return None
        return cred

    def validate_password(self, user_id: str, password: str, conn: Connection | None = None) -> bool:
        """Return True if password matches the user's live password."""
        return self._match_password(user_id, password, conn) is not None

    def validate_password_or_raise(
        self, user_id: str, password: str, conn: Connection | None = None
    ) -> PublicCredential:
        """Return the password credential's public record or raise Unauthorized."""
        cred = self._match_password(user_id, password, conn)
        if cred is None:
            raise Unauthorized()
        return cred.public()

    # ------------------------------------------------------------------
    # Third-party identities
    # ------------------------------------------------------------------

    def link_third_party(
        self,
        user_id: str,
        subject: str,
        expires_at: datetime | None = None,
        conn: Connection | None = None,
    ) -> PublicCredential:
        """Store the hash of an externally vouched subject (e.g. an OAuth `sub`).

        A user may link several providers; validate_credential() accepts any
        of them.
        """
        cred = self.repo.insert(
            {
                "created_at": self._now(),
                "user_id": user_id,
                "type": CredentialType.THIRD_PARTY.value,
                "secret": self.hasher.hash_for(CredentialType.THIRD_PARTY, subject),
                "expires_at": _as_utc(expires_at),
            },
            conn,
        )
        logger.info("Linked third-party credential_id=%s user_id=%s", cred.id, user_id)
        return cred.public()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, credential_id: int, conn: Connection | None = None) -> PublicCredential | None:
        """Return the public record for a row id, live or expired. None if absent."""
        cred = self.repo.fetch({"id": credential_id}, conn)
        return cred.public() if cred is not None else None

    def list_for_user(
        self,
        user_id: str,
        cred_type: CredentialType | None = None,
        include_expired: bool = False,
        conn: Connection | None = None,
    ) -> list[PublicCredential]:
        """Return a user's credentials (public projection), ordered by id."""
        criteria = [_credentials.c.user_id == user_id]
        if cred_type is not None:
            criteria.append(_credentials.c.type == CredentialType(cred_type).value)
        if not include_expired:
            criteria.append(_live(self._now()))
        return [c.public() for c in self.repo.query(and_(*criteria), conn)]

    def close(self) -> None:
        self.engine.dispose()


def _token_type(cred_type: CredentialType) -> CredentialType:
    try:
        cred_type = CredentialType(cred_type)
    except ValueError:
        raise ConfigurationError(f"Unknown credential type: {cred_type!r}") from None
    if cred_type not in TOKEN_TYPES:
        raise ConfigurationError(f"Tokens can only be minted for SessionToken or PrivilegedToken, not {cred_type.value}")
    return cred_type


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        created_at=_as_utc(row.created_at),
        user_id=row.user_id,
        type=CredentialType(row.type),
        secret=row.secret,
        expires_at=_as_utc(row.expires_at),
    )
