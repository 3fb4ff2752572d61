"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore, CredentialStore and AllowListStore are the repositories;
_row_to_user / _row_to_credential / _row_to_allow_list_entry are the mappers.
Services and route code never touch SQL directly.

All three repositories share one Engine, created by create_store_engine().
Each method opens its own short-lived connection and commits before
returning, so repositories are safe to share across request threads.

Security:
  All queries use bound parameters. No f-strings in SQL.

  The usage counter on api_keys is incremented with a single UPDATE
  (request_count = request_count + 1). Concurrent requests using the same
  credential therefore never lose an increment.

  UNIQUE(email), UNIQUE(provider_id) and UNIQUE(provider, uid) on users are
  the final arbiter for concurrent first logins. SQLite treats NULLs as
  distinct, so accounts without a provider identity do not collide.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import AllowListEntry, ServiceCredential, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("provider_id", BigInteger, unique=True),  # GitHub numeric id
    Column("provider_login", String(255)),
    Column("provider_name", String(255)),
    Column("provider_avatar_url", Text),
    Column("provider", String(30)),
    Column("uid", String(64)),
    Column("admin", Integer, nullable=False, server_default="0"),
    Column("deleted_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("provider", "uid", name="uq_users_provider_uid"),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("secret_hash", String(60), nullable=False, unique=True),  # bcrypt, never the raw secret
    Column("prefix", String(8), nullable=False, index=True),  # non-unique by design
    Column("owner_user_id", Integer, index=True),  # NULL = system-wide key
    Column("request_count", Integer, nullable=False, server_default="0"),
    Column("last_used_at", String(32)),
    Column("revoked_at", String(32), index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_allow_list = Table(
    "allow_list",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider_id", BigInteger, nullable=False, unique=True),
    Column("provider_login", String(255), nullable=False),
    Column("email", String(255)),
    Column("notes", Text),
    Column("added_by", String(255)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure every auth table exists.

    check_same_thread=False is required for SQLite because FastAPI runs sync
    handlers and the auth middleware chain from a thread pool.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    # Fixed precision keeps lexicographic order equal to chronological order,
    # which the retention sweep relies on.
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_store_engine("sqlite:///gatehouse.db")
        users = UserStore(engine)
        user = users.save(User(email="octocat@example.com", provider_id=42))
        users.find_by_provider_id(42)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, user: User) -> User:
        """Insert a new user (id is None) or update an existing one's profile.

        Updates write only the denormalized profile fields. admin, id and
        created_at are never touched by this path -- granting admin goes
        through set_admin().

        Raises sqlalchemy.exc.IntegrityError if the insert or update would
        violate a unique constraint (email, provider_id, provider+uid).
        """
        now = _now_iso()
        profile = {
            "email": user.email,
            "provider_id": user.provider_id,
            "provider_login": user.provider_login,
            "provider_name": user.provider_name,
            "provider_avatar_url": user.provider_avatar_url,
            "provider": user.provider,
            "uid": user.uid,
            "updated_at": now,
        }
        with self.engine.connect() as conn:
            if user.id is None:
                result = conn.execute(
                    _users.insert().values(
                        **profile,
                        admin=1 if user.admin else 0,
                        created_at=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
            else:
                conn.execute(_users.update().where(_users.c.id == user.id).values(**profile))
                user_id = user.id
            conn.commit()
        return self.get_by_id(user_id)

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key, including soft-deleted users."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_active_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Soft-deleted users are not returned."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_provider_id(self, provider_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.provider_id == provider_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email(self, email: str) -> User | None:
        """Exact (case-sensitive) email match."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_admin(self, user_id: int, admin: bool) -> bool:
        """Grant or remove the admin flag. Returns False if the user does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(admin=1 if admin else 0, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def soft_delete(self, user_id: int) -> bool:
        """Stamp deleted_at. Returns False if the user is missing or already deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
                .values(deleted_at=_now_iso(), updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def count(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0


# ---------------------------------------------------------------------------
# Service credentials
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for ServiceCredential entities (the api_keys table)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save(self, credential: ServiceCredential) -> ServiceCredential:
        """Insert a newly issued credential and return it with id and timestamps."""
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    name=credential.name,
                    secret_hash=credential.secret_hash,
                    prefix=credential.prefix,
                    owner_user_id=credential.owner_user_id,
                    request_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            credential_id = result.inserted_primary_key[0]
        return self.get_by_id(credential_id)

    def get_by_id(self, credential_id: int) -> ServiceCredential | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == credential_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def find_by_prefix(self, prefix: str) -> list[ServiceCredential]:
        """Return every non-revoked credential sharing this prefix.

        More than one row is possible: the prefix is eight characters of a
        random string and is not unique.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select()
                .where((_api_keys.c.prefix == prefix) & (_api_keys.c.revoked_at.is_(None)))
                .order_by(_api_keys.c.id)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def record_usage(self, credential_id: int) -> ServiceCredential | None:
        """Atomically bump request_count and stamp last_used_at.

        One UPDATE statement -- never read-modify-write in Python -- so two
        concurrent verifications of the same credential both count.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _api_keys.update()
                .where(_api_keys.c.id == credential_id)
                .values(
                    request_count=_api_keys.c.request_count + 1,
                    last_used_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return self.get_by_id(credential_id)

    def revoke(self, credential_id: int) -> bool:
        """Stamp revoked_at if the credential exists and is still active.

        The revoked_at IS NULL condition makes this idempotent and race-safe:
        only the first revocation updates a row.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == credential_id) & (_api_keys.c.revoked_at.is_(None)))
                .values(revoked_at=now, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def list_active(self) -> list[ServiceCredential]:
        """Return all non-revoked credentials (newest first)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _api_keys.select().where(_api_keys.c.revoked_at.is_(None)).order_by(_api_keys.c.id.desc())
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def list_for_user(self, user_id: int, include_revoked: bool = False) -> list[ServiceCredential]:
        query = _api_keys.select().where(_api_keys.c.owner_user_id == user_id)
        if not include_revoked:
            query = query.where(_api_keys.c.revoked_at.is_(None))
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_api_keys.c.id.desc())).fetchall()
        return [_row_to_credential(r) for r in rows]

    def delete_revoked_before(self, cutoff_iso: str) -> int:
        """Hard-delete credentials revoked before cutoff_iso. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _api_keys.delete().where(
                    (_api_keys.c.revoked_at.is_not(None)) & (_api_keys.c.revoked_at < cutoff_iso)
                )
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Allow-list
# ---------------------------------------------------------------------------


class AllowListStore:
    """Repository for AllowListEntry entities.

    The auth core only calls exists_by_provider_id(). add/remove/list exist
    for operators and test fixtures.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def exists_by_provider_id(self, provider_id: int) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_allow_list.c.id).where(_allow_list.c.provider_id == provider_id).limit(1)
            ).fetchone()
        return row is not None

    def add(self, entry: AllowListEntry) -> AllowListEntry:
        """Insert an entry. Raises IntegrityError if provider_id is already listed."""
        with self.engine.connect() as conn:
            conn.execute(
                _allow_list.insert().values(
                    provider_id=entry.provider_id,
                    provider_login=entry.provider_login,
                    email=entry.email,
                    notes=entry.notes,
                    added_by=entry.added_by,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return self.get_by_provider_id(entry.provider_id)

    def get_by_provider_id(self, provider_id: int) -> AllowListEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_allow_list.select().where(_allow_list.c.provider_id == provider_id)).fetchone()
        return _row_to_allow_list_entry(row) if row is not None else None

    def remove(self, provider_login: str) -> bool:
        """Delete an entry by GitHub login. Returns False if none matched."""
        with self.engine.connect() as conn:
            result = conn.execute(_allow_list.delete().where(_allow_list.c.provider_login == provider_login))
            conn.commit()
        return result.rowcount > 0

    def list_all(self) -> list[AllowListEntry]:
        """Return every entry, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_allow_list.select().order_by(_allow_list.c.id.desc())).fetchall()
        return [_row_to_allow_list_entry(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        provider_id=row.provider_id,
        provider_login=row.provider_login,
        provider_name=row.provider_name,
        provider_avatar_url=row.provider_avatar_url,
        provider=row.provider,
        uid=row.uid,
        admin=bool(row.admin),
        deleted_at=row.deleted_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_credential(row) -> ServiceCredential:
    return ServiceCredential(
        id=row.id,
        name=row.name,
        secret_hash=row.secret_hash,
        prefix=row.prefix,
        owner_user_id=row.owner_user_id,
        request_count=row.request_count,
        last_used_at=row.last_used_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_allow_list_entry(row) -> AllowListEntry:
    return AllowListEntry(
        id=row.id,
        provider_id=row.provider_id,
        provider_login=row.provider_login,
        email=row.email,
        notes=row.notes,
        added_by=row.added_by,
        created_at=row.created_at,
    )
