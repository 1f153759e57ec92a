from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from homeops.logging import get_logger
from homeops.storage.common import USER_MUTABLE_FIELDS, normalize_email
from homeops.storage.errors import ConstraintViolation
from homeops.storage.models import (
    Account,
    AccountMember,
    AccountSubscription,
    BackupCode,
    Contact,
    Invitation,
    MfaEnrollment,
    Property,
    PropertyMember,
    RefreshToken,
    SubscriptionProduct,
    System,
    TierLimits,
    UsageEvent,
    User,
    UserInvitation,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

_REQUIRED_TABLES = (
    "app_user",
    "oauth_identity",
    "refresh_token",
    "mfa_enrollment",
    "mfa_backup_code",
    "account",
    "account_member",
    "property",
    "property_member",
    "property_system",
    "contact",
    "invitation",
    "user_invitation",
    "subscription_product",
    "account_subscription",
    "usage_event",
)

_USER_COLUMNS = (
    "id, email, password_hash, display_name, role, is_active, mfa_enabled, mfa_secret, "
    "mfa_key_id, image, phone, contact_id, created_at, updated_at"
)


def _row_to_invitation(row: Dict[str, Any]) -> Invitation:
    data = dict(row)
    data["id"] = str(data["id"])
    return Invitation(**data)


def _row_to_product(row: Dict[str, Any]) -> SubscriptionProduct:
    data = dict(row)
    limits = data.pop("limits", None)
    if isinstance(limits, str):
        limits = json.loads(limits)
    return SubscriptionProduct(limits=TierLimits.from_dict(limits), **data)


class PostgresStore:
    """Postgres-backed store.

    Every public method opens its own pooled connection unless a
    ``transaction()`` block is active in the current context, in which case
    the pinned connection is reused and each write runs in a savepoint.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._pinned: ContextVar[Optional[psycopg.Connection]] = ContextVar(
            f"homeops_pg_conn_{id(self)}", default=None
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        pinned = self._pinned.get()
        if pinned is not None:
            yield pinned
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        pinned = self._pinned.get()
        if pinned is not None:
            with pinned.transaction():
                yield self
            return
        with self.pool.connection() as conn:
            token = self._pinned.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                self._pinned.reset(token)

    def install_schema(self) -> None:
        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn, conn.transaction():
            conn.execute(ddl)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply {} before starting the API.".format(
                    ", ".join(sorted(missing_tables)), SCHEMA_PATH.name
                )
            )

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except psycopg.Error as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False

    def close(self) -> None:
        self.pool.close()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        password_hash: str = "",
        display_name: Optional[str] = None,
        role: str = "homeowner",
        is_active: bool = True,
        phone: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (email, password_hash, display_name, role, is_active, phone)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (normalize_email(email), password_hash or "", display_name, role, is_active, phone),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(**row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return User(**row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return User(**row) if row else None

    def list_users(
        self,
        *,
        role: Optional[str] = None,
        active_only: bool = False,
        user_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
    ) -> List[User]:
        clauses: List[str] = []
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if active_only:
            clauses.append("is_active")
        if user_ids is not None:
            clauses.append("id = ANY(%s)")
            params.append(list(user_ids))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_USER_COLUMNS} FROM app_user {where} ORDER BY id"
        if limit:
            sql += " LIMIT %s"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [User(**row) for row in rows]

    def update_user(self, user_id: int, **fields) -> Optional[User]:
        updates = {k: v for k, v in fields.items() if k in USER_MUTABLE_FIELDS}
        if not updates:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s "
                f"RETURNING {_USER_COLUMNS}",
                (*updates.values(), user_id),
            ).fetchone()
        return User(**row) if row else None

    def set_user_password(self, user_id: int, password_hash: str) -> None:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def set_user_active(
        self, user_id: int, is_active: bool, *, password_hash: Optional[str] = None
    ) -> None:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE app_user
                SET is_active = %s, password_hash = COALESCE(%s, password_hash), updated_at = now()
                WHERE id = %s
                """,
                (is_active, password_hash, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    def set_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s "
                f"RETURNING {_USER_COLUMNS}",
                (role, user_id),
            ).fetchone()
        return User(**row) if row else None

    def set_user_mfa(
        self,
        user_id: int,
        *,
        enabled: bool,
        secret: Optional[str],
        key_id: Optional[str] = None,
    ) -> None:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE app_user
                SET mfa_enabled = %s, mfa_secret = %s, mfa_key_id = %s, updated_at = now()
                WHERE id = %s
                """,
                (enabled, secret, key_id, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    def link_oauth_identity(
        self, provider: str, subject: str, user_id: int, email: Optional[str] = None
    ) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                cur = conn.execute(
                    """
                    INSERT INTO oauth_identity (provider, subject, user_id, email)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (provider, subject) DO UPDATE SET email = EXCLUDED.email
                    WHERE oauth_identity.user_id = EXCLUDED.user_id
                    """,
                    (provider, subject, user_id, email),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation(
                        "oauth identity already linked", {"provider": provider}
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for oauth", {"user_id": user_id})

    def get_user_by_oauth(self, provider: str, subject: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {', '.join('u.' + c.strip() for c in _USER_COLUMNS.split(','))}
                FROM oauth_identity o JOIN app_user u ON u.id = o.user_id
                WHERE o.provider = %s AND o.subject = %s
                """,
                (provider, subject),
            ).fetchone()
        return User(**row) if row else None

    # -- refresh tokens ----------------------------------------------------

    def store_refresh_token(
        self, token_hash: str, user_id: int, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (token_hash, user_id, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING token_hash, user_id, expires_at, created_at
                    """,
                    (token_hash, user_id, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return RefreshToken(**row)

    def find_refresh_token(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT token_hash, user_id, expires_at, created_at
                FROM refresh_token WHERE token_hash = %s AND expires_at > %s
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return RefreshToken(**row) if row else None

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM refresh_token WHERE token_hash = %s", (token_hash,))
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def sweep_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # -- mfa ---------------------------------------------------------------

    def upsert_mfa_enrollment(
        self,
        user_id: int,
        secret_ciphertext: str,
        expires_at: datetime,
        key_id: Optional[str] = None,
    ) -> MfaEnrollment:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO mfa_enrollment (user_id, secret_ciphertext, key_id, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret_ciphertext = EXCLUDED.secret_ciphertext,
                        key_id = EXCLUDED.key_id,
                        expires_at = EXCLUDED.expires_at,
                        created_at = now()
                    RETURNING user_id, secret_ciphertext, key_id, expires_at, created_at
                    """,
                    (user_id, secret_ciphertext, key_id, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
        return MfaEnrollment(**row)

    def get_mfa_enrollment(self, user_id: int) -> Optional[MfaEnrollment]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT user_id, secret_ciphertext, key_id, expires_at, created_at
                FROM mfa_enrollment WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        return MfaEnrollment(**row) if row else None

    def delete_mfa_enrollment(self, user_id: int) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM mfa_enrollment WHERE user_id = %s", (user_id,))

    def sweep_expired_mfa_enrollments(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM mfa_enrollment WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    def replace_backup_codes(self, user_id: int, code_hashes: Sequence[str]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))
                with conn.cursor() as cur:
                    cur.executemany(
                        "INSERT INTO mfa_backup_code (user_id, code_hash) VALUES (%s, %s)",
                        [(user_id, code_hash) for code_hash in code_hashes],
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("duplicate backup code", {"user_id": user_id})

    def consume_backup_code(self, user_id: int, code_hash: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                """
                UPDATE mfa_backup_code SET used_at = now()
                WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                """,
                (user_id, code_hash),
            )
            return cur.rowcount == 1

    def count_unused_backup_codes(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM mfa_backup_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["n"])

    def list_backup_codes(self, user_id: int) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, code_hash, used_at, created_at
                FROM mfa_backup_code WHERE user_id = %s
                """,
                (user_id,),
            ).fetchall()
        return [BackupCode(**row) for row in rows]

    def delete_backup_codes(self, user_id: int) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute("DELETE FROM mfa_backup_code WHERE user_id = %s", (user_id,))

    # -- accounts ----------------------------------------------------------

    def create_account(
        self, name: str, url: str, owner_user_id: Optional[int] = None
    ) -> Account:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO account (name, url, owner_user_id) VALUES (%s, %s, %s)
                    RETURNING id, name, url, owner_user_id, created_at, updated_at
                    """,
                    (name, url, owner_user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("account url already exists", {"field": "url"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("owner does not exist", {"user_id": owner_user_id})
        return Account(**row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, url, owner_user_id, created_at, updated_at FROM account WHERE id = %s",
                (account_id,),
            ).fetchone()
        return Account(**row) if row else None

    def get_account_by_url(self, url: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, url, owner_user_id, created_at, updated_at FROM account WHERE url = %s",
                (url,),
            ).fetchone()
        return Account(**row) if row else None

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, name, url, owner_user_id, created_at, updated_at FROM account ORDER BY id"
            ).fetchall()
        return [Account(**row) for row in rows]

    def list_accounts_for_user(self, user_id: int) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT a.id, a.name, a.url, a.owner_user_id, a.created_at, a.updated_at
                FROM account a JOIN account_member m ON m.account_id = a.id
                WHERE m.user_id = %s ORDER BY a.id
                """,
                (user_id,),
            ).fetchall()
        return [Account(**row) for row in rows]

    def delete_account(self, account_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                UPDATE app_user SET contact_id = NULL
                WHERE contact_id IN (SELECT id FROM contact WHERE account_id = %s)
                """,
                (account_id,),
            )
            cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
            return cur.rowcount > 0

    def add_account_member(self, account_id: int, user_id: int, role: str) -> AccountMember:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO account_member (account_id, user_id, role) VALUES (%s, %s, %s)
                    RETURNING account_id, user_id, role, created_at
                    """,
                    (account_id, user_id, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user already in account", {"account_id": account_id, "user_id": user_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or user does not exist", {"account_id": account_id, "user_id": user_id}
            )
        return AccountMember(**row)

    def get_account_member(self, account_id: int, user_id: int) -> Optional[AccountMember]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT account_id, user_id, role, created_at FROM account_member
                WHERE account_id = %s AND user_id = %s
                """,
                (account_id, user_id),
            ).fetchone()
        return AccountMember(**row) if row else None

    def list_account_members(self, account_id: int) -> List[AccountMember]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT account_id, user_id, role, created_at FROM account_member
                WHERE account_id = %s ORDER BY created_at, user_id
                """,
                (account_id,),
            ).fetchall()
        return [AccountMember(**row) for row in rows]

    def remove_account_member(self, account_id: int, user_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM account_member WHERE account_id = %s AND user_id = %s",
                (account_id, user_id),
            )
            return cur.rowcount > 0

    def set_account_member_role(
        self, account_id: int, user_id: int, role: str
    ) -> Optional[AccountMember]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                """
                UPDATE account_member SET role = %s WHERE account_id = %s AND user_id = %s
                RETURNING account_id, user_id, role, created_at
                """,
                (role, account_id, user_id),
            ).fetchone()
        return AccountMember(**row) if row else None

    def is_user_in_account(self, user_id: int, account_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM account_member WHERE account_id = %s AND user_id = %s",
                (account_id, user_id),
            ).fetchone()
        return row is not None

    def users_share_account(self, user_a: int, user_b: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS hit FROM account_member a
                JOIN account_member b ON a.account_id = b.account_id
                WHERE a.user_id = %s AND b.user_id = %s LIMIT 1
                """,
                (user_a, user_b),
            ).fetchone()
        return row is not None

    def count_owned_accounts(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(DISTINCT id) AS n FROM (
                    SELECT account_id AS id FROM account_member WHERE user_id = %s AND role = 'owner'
                    UNION
                    SELECT id FROM account WHERE owner_user_id = %s
                ) owned
                """,
                (user_id, user_id),
            ).fetchone()
        return int(row["n"])

    # -- properties --------------------------------------------------------

    _PROPERTY_COLUMNS = (
        "id, property_uid, account_id, passport_id, address, city, state, zip, created_at, updated_at"
    )

    def create_property(
        self,
        account_id: int,
        property_uid: str,
        *,
        passport_id: Optional[str] = None,
        address: Optional[str] = None,
        city: Optional[str] = None,
        state: Optional[str] = None,
        zip: Optional[str] = None,
    ) -> Property:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO property (property_uid, account_id, passport_id, address, city, state, zip)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {self._PROPERTY_COLUMNS}
                    """,
                    (property_uid.upper(), account_id, passport_id, address, city, state, zip),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("property uid exists", {"field": "property_uid"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return Property(**row)

    def get_property(self, property_id: int) -> Optional[Property]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._PROPERTY_COLUMNS} FROM property WHERE id = %s", (property_id,)
            ).fetchone()
        return Property(**row) if row else None

    def get_property_by_uid(self, property_uid: str) -> Optional[Property]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._PROPERTY_COLUMNS} FROM property WHERE property_uid = %s",
                ((property_uid or "").upper(),),
            ).fetchone()
        return Property(**row) if row else None

    def list_properties(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Property]:
        with self._connect() as conn:
            if account_ids is None:
                rows = conn.execute(
                    f"SELECT {self._PROPERTY_COLUMNS} FROM property ORDER BY id"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {self._PROPERTY_COLUMNS} FROM property WHERE account_id = ANY(%s) ORDER BY id",
                    (list(account_ids),),
                ).fetchall()
        return [Property(**row) for row in rows]

    def list_properties_for_user(self, user_id: int) -> List[Property]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {self._PROPERTY_COLUMNS} FROM property
                WHERE id IN (SELECT property_id FROM property_member WHERE user_id = %s)
                   OR account_id IN (SELECT account_id FROM account_member WHERE user_id = %s)
                ORDER BY id
                """,
                (user_id, user_id),
            ).fetchall()
        return [Property(**row) for row in rows]

    def count_properties(self, account_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM property WHERE account_id = %s", (account_id,)
            ).fetchone()
        return int(row["n"])

    def passport_id_exists(self, passport_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM property WHERE passport_id = %s", (passport_id,)
            ).fetchone()
        return row is not None

    def delete_property(self, property_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM property WHERE id = %s", (property_id,))
            return cur.rowcount > 0

    def add_property_member(self, property_id: int, user_id: int, role: str) -> PropertyMember:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO property_member (property_id, user_id, role) VALUES (%s, %s, %s)
                    ON CONFLICT (property_id, user_id) DO UPDATE
                    SET role = EXCLUDED.role, updated_at = now()
                    RETURNING property_id, user_id, role, created_at, updated_at
                    """,
                    (property_id, user_id, role),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "property or user does not exist", {"property_id": property_id, "user_id": user_id}
            )
        return PropertyMember(**row)

    def get_property_member(self, property_id: int, user_id: int) -> Optional[PropertyMember]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT property_id, user_id, role, created_at, updated_at FROM property_member
                WHERE property_id = %s AND user_id = %s
                """,
                (property_id, user_id),
            ).fetchone()
        return PropertyMember(**row) if row else None

    def list_property_members(self, property_id: int) -> List[PropertyMember]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT property_id, user_id, role, created_at, updated_at FROM property_member
                WHERE property_id = %s ORDER BY created_at, user_id
                """,
                (property_id,),
            ).fetchall()
        return [PropertyMember(**row) for row in rows]

    def remove_property_member(self, property_id: int, user_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM property_member WHERE property_id = %s AND user_id = %s",
                (property_id, user_id),
            )
            return cur.rowcount > 0

    def count_property_members(self, property_id: int, *, role: Optional[str] = None) -> int:
        with self._connect() as conn:
            if role is None:
                row = conn.execute(
                    "SELECT count(*) AS n FROM property_member WHERE property_id = %s",
                    (property_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT count(*) AS n FROM property_member WHERE property_id = %s AND role = %s",
                    (property_id, role),
                ).fetchone()
        return int(row["n"])

    def is_user_on_property(self, user_id: int, property_id: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM property_member WHERE property_id = %s AND user_id = %s",
                (property_id, user_id),
            ).fetchone()
        return row is not None

    def create_system(
        self,
        property_id: int,
        system_type: str,
        *,
        name: Optional[str] = None,
        installed_year: Optional[int] = None,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> System:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO property_system (property_id, system_type, name, installed_year, notes, created_by)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING id, property_id, system_type, name, installed_year, notes, created_by, created_at
                    """,
                    (property_id, system_type, name, installed_year, notes, created_by),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("property does not exist", {"property_id": property_id})
        return System(**row)

    def list_systems(self, property_id: int) -> List[System]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, property_id, system_type, name, installed_year, notes, created_by, created_at
                FROM property_system WHERE property_id = %s ORDER BY id
                """,
                (property_id,),
            ).fetchall()
        return [System(**row) for row in rows]

    # -- contacts ----------------------------------------------------------

    def create_contact(
        self,
        account_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO contact (account_id, name, email, phone) VALUES (%s, %s, %s, %s)
                    RETURNING id, account_id, name, email, phone, created_at
                    """,
                    (account_id, name, normalize_email(email) if email else None, phone),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return Contact(**row)

    def get_contacts(self, contact_ids: Iterable[int]) -> List[Contact]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, name, email, phone, created_at
                FROM contact WHERE id = ANY(%s) ORDER BY id
                """,
                (list(contact_ids),),
            ).fetchall()
        return [Contact(**row) for row in rows]

    def list_contacts(self, *, account_ids: Optional[Iterable[int]] = None) -> List[Contact]:
        with self._connect() as conn:
            if account_ids is None:
                rows = conn.execute(
                    "SELECT id, account_id, name, email, phone, created_at FROM contact ORDER BY id"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT id, account_id, name, email, phone, created_at
                    FROM contact WHERE account_id = ANY(%s) ORDER BY id
                    """,
                    (list(account_ids),),
                ).fetchall()
        return [Contact(**row) for row in rows]

    def find_contact_by_email(self, account_id: int, email: str) -> Optional[Contact]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, account_id, name, email, phone, created_at
                FROM contact WHERE account_id = %s AND email = %s ORDER BY id LIMIT 1
                """,
                (account_id, normalize_email(email)),
            ).fetchone()
        return Contact(**row) if row else None

    # -- invitations -------------------------------------------------------

    _INVITATION_COLUMNS = (
        "id, type, inviter_user_id, invitee_email, account_id, property_id, intended_role, "
        "token_hash, status, expires_at, accepted_at, accepted_by_user_id, created_at"
    )

    def create_invitation(self, invitation: Invitation) -> Invitation:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO invitation (
                        id, type, inviter_user_id, invitee_email, account_id, property_id,
                        intended_role, token_hash, status, expires_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {self._INVITATION_COLUMNS}
                    """,
                    (
                        invitation.id,
                        invitation.type,
                        invitation.inviter_user_id,
                        normalize_email(invitation.invitee_email),
                        invitation.account_id,
                        invitation.property_id,
                        invitation.intended_role,
                        invitation.token_hash,
                        invitation.status,
                        invitation.expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation token exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("invitation target does not exist", {"id": invitation.id})
        return _row_to_invitation(row)

    def get_invitation(self, invitation_id: str) -> Optional[Invitation]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"SELECT {self._INVITATION_COLUMNS} FROM invitation WHERE id = %s",
                    (invitation_id,),
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return _row_to_invitation(row) if row else None

    def get_invitation_by_token_hash(self, token_hash: str) -> Optional[Invitation]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._INVITATION_COLUMNS} FROM invitation WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def list_invitations(
        self,
        *,
        inviter_user_id: Optional[int] = None,
        account_id: Optional[int] = None,
        property_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Invitation]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("inviter_user_id", inviter_user_id),
            ("account_id", account_id),
            ("property_id", property_id),
            ("status", status),
        ):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._INVITATION_COLUMNS} FROM invitation {where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [_row_to_invitation(row) for row in rows]

    def transition_invitation(
        self,
        invitation_id: str,
        *,
        from_status: str,
        to_status: str,
        accepted_by_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Invitation]:
        accepted_at = (now or utcnow()) if to_status == "accepted" else None
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                f"""
                UPDATE invitation
                SET status = %s,
                    accepted_at = COALESCE(%s, accepted_at),
                    accepted_by_user_id = COALESCE(%s, accepted_by_user_id)
                WHERE id = %s AND status = %s
                RETURNING {self._INVITATION_COLUMNS}
                """,
                (to_status, accepted_at, accepted_by_user_id, invitation_id, from_status),
            ).fetchone()
        return _row_to_invitation(row) if row else None

    def expire_pending_invitations(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "UPDATE invitation SET status = 'expired' WHERE status = 'pending' AND expires_at <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount

    def create_user_invitation(
        self, user_id: int, token_hash: str, expires_at: datetime
    ) -> UserInvitation:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO user_invitation (user_id, token_hash, expires_at) VALUES (%s, %s, %s)
                    RETURNING id, user_id, token_hash, expires_at, used_at, created_at
                    """,
                    (user_id, token_hash, expires_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("activation token exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return UserInvitation(**row)

    def find_valid_user_invitation(
        self, token_hash: str, now: Optional[datetime] = None
    ) -> Optional[UserInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, token_hash, expires_at, used_at, created_at
                FROM user_invitation
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return UserInvitation(**row) if row else None

    def mark_user_invitation_used(self, invitation_id: int) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "UPDATE user_invitation SET used_at = now() WHERE id = %s AND used_at IS NULL",
                (invitation_id,),
            )
            return cur.rowcount == 1

    # -- billing -----------------------------------------------------------

    _PRODUCT_COLUMNS = "id, name, target_role, price, billing_interval, limits, is_active, created_at"

    def create_product(
        self,
        name: str,
        *,
        target_role: str = "homeowner",
        price: Decimal = Decimal("0"),
        billing_interval: str = "month",
        limits: Optional[TierLimits] = None,
        is_active: bool = True,
    ) -> SubscriptionProduct:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    f"""
                    INSERT INTO subscription_product (name, target_role, price, billing_interval, limits, is_active)
                    VALUES (%s, %s, %s, %s, %s::jsonb, %s)
                    RETURNING {self._PRODUCT_COLUMNS}
                    """,
                    (
                        name,
                        target_role,
                        Decimal(price),
                        billing_interval,
                        json.dumps((limits or TierLimits()).to_dict()),
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("product name already exists", {"field": "name"})
        return _row_to_product(row)

    def list_products(self, *, active_only: bool = False) -> List[SubscriptionProduct]:
        where = "WHERE is_active" if active_only else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {self._PRODUCT_COLUMNS} FROM subscription_product {where} ORDER BY id"
            ).fetchall()
        return [_row_to_product(row) for row in rows]

    def get_product_by_name(self, name: str) -> Optional[SubscriptionProduct]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._PRODUCT_COLUMNS} FROM subscription_product WHERE name = %s",
                (name,),
            ).fetchone()
        return _row_to_product(row) if row else None

    def get_product(self, product_id: int) -> Optional[SubscriptionProduct]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {self._PRODUCT_COLUMNS} FROM subscription_product WHERE id = %s",
                (product_id,),
            ).fetchone()
        return _row_to_product(row) if row else None

    def create_subscription(
        self,
        account_id: int,
        product_id: int,
        *,
        status: str = "active",
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
    ) -> AccountSubscription:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO account_subscription
                        (account_id, product_id, status, current_period_start, current_period_end)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, account_id, product_id, status, current_period_start,
                              current_period_end, created_at, updated_at
                    """,
                    (account_id, product_id, status, current_period_start, current_period_end),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or product does not exist",
                {"account_id": account_id, "product_id": product_id},
            )
        return AccountSubscription(**row)

    def list_subscriptions(self, account_id: int) -> List[AccountSubscription]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, product_id, status, current_period_start,
                       current_period_end, created_at, updated_at
                FROM account_subscription WHERE account_id = %s ORDER BY id
                """,
                (account_id,),
            ).fetchall()
        return [AccountSubscription(**row) for row in rows]

    # -- usage -------------------------------------------------------------

    def log_usage_event(
        self,
        account_id: int,
        *,
        user_id: Optional[int],
        category: str,
        model: Optional[str],
        prompt_tokens: int,
        completion_tokens: int,
        total_cost: Decimal,
        created_at: Optional[datetime] = None,
    ) -> UsageEvent:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO usage_event (
                        account_id, user_id, category, model, prompt_tokens,
                        completion_tokens, total_cost, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id, account_id, user_id, category, model, prompt_tokens,
                              completion_tokens, total_cost, created_at
                    """,
                    (
                        account_id,
                        user_id,
                        category,
                        model,
                        prompt_tokens,
                        completion_tokens,
                        Decimal(total_cost),
                        created_at or utcnow(),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return UsageEvent(**row)

    def sum_usage_since(self, account_id: int, since: datetime) -> Decimal:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(total_cost), 0) AS spent FROM usage_event
                WHERE account_id = %s AND created_at >= %s
                """,
                (account_id, since),
            ).fetchone()
        return Decimal(row["spent"])

    def list_usage_events(
        self, account_id: int, *, limit: int = 50, offset: int = 0
    ) -> List[UsageEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, account_id, user_id, category, model, prompt_tokens,
                       completion_tokens, total_cost, created_at
                FROM usage_event WHERE account_id = %s
                ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s
                """,
                (account_id, limit, offset),
            ).fetchall()
        return [UsageEvent(**row) for row in rows]
