"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and refresh sessions.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_account / _row_to_session are the mappers.
Gateway and coordinator code never touches SQL directly -- they depend on the
SessionStore / AccountStore protocols, which AuthStore satisfies.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are persisted as SHA-256 hex digests (UNIQUE index). The raw
  token leaves the process exactly once, in the login/refresh response. A
  plain digest rather than an HMAC keeps sessions valid across SECRET_KEY
  rotation; 512 bits of token entropy make a keyless digest safe to store.

Atomic rotation:
  rotate() runs one transaction whose first statement is a conditional UPDATE
  (compare-and-swap on the revoked flag). Exactly one of any number of racing
  callers sees rowcount == 1 and inserts the successor; the rest see 0 and get
  None. No read-then-write window exists.

Timeouts:
  Every call is bounded by STORE_TIMEOUT_SECONDS -- the SQLite busy timeout;
  on other backends the pool checkout timeout plus a per-statement driver
  timeout (see _connect_args). OperationalError, pool
  TimeoutError and DisconnectionError are re-raised as StoreUnavailable.
  IntegrityError is left alone so callers can recognise duplicates.

Timestamps are stored as fixed-width ISO 8601 UTC strings with microseconds,
so string comparison in SQL orders the same way datetime comparison does.

Layer rule: no imports from api/, ws/, or core/.
"""

from __future__ import annotations

import hashlib
import logging
import math
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Protocol

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, create_engine, event, func, select, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StoreUnavailable
from auth.models import Account, RefreshSession

logger = logging.getLogger("chatauth.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'chatauth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased, trimmed
    Column("password_hash", String(60), nullable=False),  # bcrypt
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

_refresh_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("revoked_reason", String(20)),  # rotated | logout | logout_all | password_change
    Column("replaced_by", Integer),  # successor id when rotated
)


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class SessionStore(Protocol):
    def create(self, account_id: int, token: str, ttl: int, now: datetime | None = None) -> RefreshSession: ...

    def find_by_token(self, token: str) -> RefreshSession | None: ...

    def revoke(self, token: str, reason: str = "logout", now: datetime | None = None) -> bool: ...

    def revoke_all_for_account(self, account_id: int, reason: str = "logout_all", now: datetime | None = None) -> int: ...

    def rotate(
        self, old_token: str, new_token: str, ttl: int, now: datetime | None = None
    ) -> RefreshSession | None: ...

    def purge_expired_or_revoked(self, retention: int, now: datetime | None = None) -> int: ...

    def count_valid_for_account(self, account_id: int, now: datetime | None = None) -> int: ...


class AccountStore(Protocol):
    def create_account(
        self, email: str, password_hash: str, first_name: str | None = None, last_name: str | None = None
    ) -> Account: ...

    def get_account(self, account_id: int) -> Account | None: ...

    def get_account_by_email(self, email: str) -> Account | None: ...

    def update_password(self, account_id: int, password_hash: str) -> bool: ...

    def replace_password(
        self, account_id: int, password_hash: str, reason: str = "password_change", now: datetime | None = None
    ) -> int: ...

    def update_last_login(self, account_id: int, now: datetime | None = None) -> None: ...

    def set_active(self, account_id: int, active: bool) -> bool: ...


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by the rotation writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases ignore it.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _connect_args(db_url: str, timeout: float) -> dict:
    """Driver arguments that bound both connecting and each statement by timeout.

    SQLite's busy timeout covers lock waits. PostgreSQL gets a server-side
    statement_timeout; MySQL drivers get socket read/write timeouts.
    """
    backend = make_url(db_url).get_backend_name()
    seconds = max(1, math.ceil(timeout))
    if backend == "sqlite":
        return {"check_same_thread": False, "timeout": timeout}
    if backend == "postgresql":
        return {"connect_timeout": seconds, "options": f"-c statement_timeout={int(timeout * 1000)}"}
    if backend == "mysql":
        return {"connect_timeout": seconds, "read_timeout": seconds, "write_timeout": seconds}
    return {}


@contextmanager
def _guard(operation: str) -> Iterator[None]:
    """Translate backend outages and timeouts into StoreUnavailable."""
    try:
        yield
    except (OperationalError, PoolTimeoutError, DisconnectionError) as exc:
        logger.warning("Store %s failed: %s", operation, type(exc).__name__)
        raise StoreUnavailable() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Account and RefreshSession entities.

    Usage:
        store = AuthStore(settings.database_url, timeout=settings.store_timeout_seconds)
        account = store.create_account("ada@example.com", password_hash)
        session = store.create(account.id, refresh_token, ttl=604800)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        self.timeout = timeout
        connect_args = _connect_args(db_url, timeout)
        if db_url.startswith("sqlite"):
            self.engine: Engine = create_engine(db_url, connect_args=connect_args)
            event.listen(self.engine, "connect", _set_wal_mode)
        else:
            self.engine = create_engine(db_url, connect_args=connect_args, pool_timeout=timeout, pool_pre_ping=True)
        with _guard("schema setup"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(
        self, email: str, password_hash: str, first_name: str | None = None, last_name: str | None = None
    ) -> Account:
        """Insert a new account and return it with its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The gateway catches it as the signal for a duplicate registration,
        including the case where a concurrent request won the race.
        """
        created_at = _utcnow()
        with _guard("create_account"), self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=email,
                    password_hash=password_hash,
                    first_name=first_name,
                    last_name=last_name,
                    is_active=1,
                    created_at=_iso(created_at),
                )
            )
            conn.commit()
        return Account(
            id=result.inserted_primary_key[0],
            email=email,
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_active=True,
            created_at=created_at,
        )

    def get_account(self, account_id: int) -> Account | None:
        with _guard("get_account"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str) -> Account | None:
        """Look up an account by exact (already normalized) email."""
        with _guard("get_account_by_email"), self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def update_password(self, account_id: int, password_hash: str) -> bool:
        with _guard("update_password"), self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(password_hash=password_hash)
            )
            conn.commit()
        return result.rowcount > 0

    def replace_password(
        self, account_id: int, password_hash: str, reason: str = "password_change", now: datetime | None = None
    ) -> int:
        """Store a new password hash and revoke every live session, all or nothing.

        Returns how many sessions were revoked. If either statement fails the
        old hash and every session stay as they were.
        """
        stamp = _iso(now or _utcnow())
        with _guard("replace_password"), self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(password_hash=password_hash))
            result = conn.execute(
                _refresh_sessions.update()
                .where((_refresh_sessions.c.account_id == account_id) & (_refresh_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=stamp, revoked_reason=reason)
            )
        return result.rowcount

    def update_last_login(self, account_id: int, now: datetime | None = None) -> None:
        """Stamp last_login_at on every successful register/login."""
        stamp = _iso(now or _utcnow())
        with _guard("update_last_login"), self.engine.connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login_at=stamp))
            conn.commit()

    def set_active(self, account_id: int, active: bool) -> bool:
        """Flip the active flag. Returns False if account_id was not found."""
        with _guard("set_active"), self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update().where(_accounts.c.id == account_id).values(is_active=1 if active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh session queries
    # ------------------------------------------------------------------

    def create(self, account_id: int, token: str, ttl: int, now: datetime | None = None) -> RefreshSession:
        """Persist a new VALID session for token, expiring ttl seconds from now."""
        issued_at = now or _utcnow()
        session = RefreshSession(
            account_id=account_id,
            token_hash=hash_token(token),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(seconds=ttl),
        )
        with _guard("create_session"), self.engine.connect() as conn:
            result = conn.execute(_insert_session(session))
            conn.commit()
        session.id = result.inserted_primary_key[0]
        return session

    def find_by_token(self, token: str) -> RefreshSession | None:
        """Return the session for token in whatever state it is in, or None."""
        with _guard("find_session"), self.engine.connect() as conn:
            row = conn.execute(
                _refresh_sessions.select().where(_refresh_sessions.c.token_hash == hash_token(token))
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def revoke(self, token: str, reason: str = "logout", now: datetime | None = None) -> bool:
        """Revoke one session. Idempotent: absent or already revoked returns False."""
        stamp = _iso(now or _utcnow())
        with _guard("revoke"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_sessions.update()
                .where((_refresh_sessions.c.token_hash == hash_token(token)) & (_refresh_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=stamp, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_for_account(self, account_id: int, reason: str = "logout_all", now: datetime | None = None) -> int:
        """Revoke every unrevoked session of an account. Returns how many changed."""
        stamp = _iso(now or _utcnow())
        with _guard("revoke_all"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_sessions.update()
                .where((_refresh_sessions.c.account_id == account_id) & (_refresh_sessions.c.revoked == 0))
                .values(revoked=1, revoked_at=stamp, revoked_reason=reason)
            )
            conn.commit()
        return result.rowcount

    def rotate(self, old_token: str, new_token: str, ttl: int, now: datetime | None = None) -> RefreshSession | None:
        """Atomically retire old_token and create its successor.

        Returns the successor session, or None when old_token was not VALID at
        the moment of the swap (absent, revoked, expired, or another caller
        already rotated it). On None nothing was written.
        """
        now = now or _utcnow()
        old_hash = hash_token(old_token)
        with _guard("rotate"), self.engine.begin() as conn:
            swapped = conn.execute(
                _refresh_sessions.update()
                .where(
                    (_refresh_sessions.c.token_hash == old_hash)
                    & (_refresh_sessions.c.revoked == 0)
                    & (_refresh_sessions.c.expires_at > _iso(now))
                )
                .values(revoked=1, revoked_at=_iso(now), revoked_reason="rotated")
            )
            if swapped.rowcount != 1:
                return None
            account_id = conn.execute(
                select(_refresh_sessions.c.account_id).where(_refresh_sessions.c.token_hash == old_hash)
            ).scalar_one()
            successor = RefreshSession(
                account_id=account_id,
                token_hash=hash_token(new_token),
                issued_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            successor.id = conn.execute(_insert_session(successor)).inserted_primary_key[0]
            conn.execute(
                _refresh_sessions.update()
                .where(_refresh_sessions.c.token_hash == old_hash)
                .values(replaced_by=successor.id)
            )
        return successor

    def purge_expired_or_revoked(self, retention: int, now: datetime | None = None) -> int:
        """Delete terminal sessions older than the retention window.

        A row qualifies when it was revoked before now - retention, or when it
        expired before now - retention. VALID rows never qualify.
        """
        cutoff = _iso((now or _utcnow()) - timedelta(seconds=retention))
        with _guard("purge"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_sessions.delete().where(
                    ((_refresh_sessions.c.revoked == 1) & (_refresh_sessions.c.revoked_at < cutoff))
                    | (_refresh_sessions.c.expires_at < cutoff)
                )
            )
            conn.commit()
        return result.rowcount

    def count_valid_for_account(self, account_id: int, now: datetime | None = None) -> int:
        stamp = _iso(now or _utcnow())
        with _guard("count_valid"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_sessions)
                .where(
                    (_refresh_sessions.c.account_id == account_id)
                    & (_refresh_sessions.c.revoked == 0)
                    & (_refresh_sessions.c.expires_at > stamp)
                )
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with _guard("ping"), self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _insert_session(session: RefreshSession):
    return _refresh_sessions.insert().values(
        account_id=session.account_id,
        token_hash=session.token_hash,
        issued_at=_iso(session.issued_at),
        expires_at=_iso(session.expires_at),
        revoked=0,
    )


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        is_active=bool(row.is_active),
        created_at=_parse(row.created_at),
        last_login_at=_parse(row.last_login_at),
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_parse(row.revoked_at),
        revoked_reason=row.revoked_reason,
        replaced_by=row.replaced_by,
    )
