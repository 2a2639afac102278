"""SQL-backed store for locks and presences with TTL bookkeeping."""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

LOCK_TYPE = "lock"
PRESENCE_TYPE = "presence"

_PLACEHOLDERS = {"sqlite": "?", "mysql": "%s", "postgres": "%s"}
_MISSING_TABLE = re.compile(
    r"no such table|doesn't exist|does not exist|undefinedtable", re.IGNORECASE
)


class TypeCode(IntEnum):
    """Numeric code of a resource type."""

    UNKNOWN = 0
    LOCK = 1
    PRESENCE = 2


class LockCollisionError(Exception):
    """The lock is held by another owner or has changed since it was read."""

    def __init__(self, message: str = "lock-collision") -> None:
        super().__init__(message)


class ResourceNotFoundError(Exception):
    """No lock with an owner exists for the key."""

    def __init__(self, message: str = "resource-not-found") -> None:
        super().__init__(message)


class UnrecoverableError(Exception):
    """The database is in a state the server cannot recover from."""

    def __init__(self, message: str = "unrecoverable-error") -> None:
        super().__init__(message)


_DOMAIN_ERRORS = (LockCollisionError, ResourceNotFoundError, UnrecoverableError)


def get_type_code(lock_type: str) -> TypeCode:
    """Return the type code that belongs to a type name."""
    if lock_type == LOCK_TYPE:
        return TypeCode.LOCK
    if lock_type == PRESENCE_TYPE:
        return TypeCode.PRESENCE
    return TypeCode.UNKNOWN


@dataclass
class Resource:
    """A lockable resource: a key held by an owner with a value."""

    key: str
    owner: str = ""
    value: str = ""
    type: str = ""
    type_code: TypeCode = TypeCode.UNKNOWN


def _type_name(resource: Resource) -> str:
    if resource.type_code == TypeCode.LOCK:
        return LOCK_TYPE
    if resource.type_code == TypeCode.PRESENCE:
        return PRESENCE_TYPE
    return resource.type


def normalize_resource(resource: Resource) -> Resource:
    """Return a copy with the type name and type code filled in from each other."""
    lock_type = resource.type or _type_name(resource)
    type_code = TypeCode(resource.type_code)
    if type_code == TypeCode.UNKNOWN:
        type_code = get_type_code(lock_type)
    return replace(resource, type=lock_type, type_code=type_code)


@dataclass
class Lock:
    """A stored resource together with its TTL and modification stamp."""

    resource: Resource
    ttl_in_seconds: int = 0
    modified_index: int = 0
    modified_id: str = ""


def _log_data(resource: Resource) -> dict[str, Any]:
    return {
        "key": resource.key,
        "owner": resource.owner,
        "type": resource.type,
        "type-code": int(resource.type_code),
    }


class SQLLockDB:
    """Lock operations over a DB-API connection holding a ``locks`` table."""

    def __init__(
        self,
        connection: Any,
        flavor: str,
        guid_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        if flavor not in _PLACEHOLDERS:
            raise ValueError(f"unsupported database flavor: {flavor!r}")
        self._connection = connection
        self.flavor = flavor
        self._placeholder = _PLACEHOLDERS[flavor]
        self._guid_provider = guid_provider or (lambda: str(uuid.uuid4()))

    def _sql(self, query: str) -> str:
        return query.replace("?", self._placeholder)

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        cursor = self._connection.cursor()
        try:
            yield cursor
            self._connection.commit()
        except _DOMAIN_ERRORS:
            self._rollback()
            raise
        except Exception as exc:
            self._rollback()
            if _MISSING_TABLE.search(str(exc)):
                raise UnrecoverableError() from exc
            raise
        finally:
            cursor.close()

    def _rollback(self) -> None:
        try:
            self._connection.rollback()
        except Exception:  # the original error matters more
            logger.debug("failed-to-rollback", exc_info=True)

    def create_lock_table(self) -> None:
        """Create the ``locks`` table if it does not exist."""
        cursor = self._connection.cursor()
        try:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS locks (
                    path VARCHAR(255) PRIMARY KEY,
                    owner VARCHAR(255),
                    value VARCHAR(4096),
                    type VARCHAR(255) DEFAULT '',
                    modified_index BIGINT DEFAULT 0,
                    modified_id varchar(255) DEFAULT '',
                    ttl BIGINT DEFAULT 0
                )
                """
            )
            self._connection.commit()
        finally:
            cursor.close()

    def _fetch_lock(self, cursor: Any, key: str) -> Optional[Lock]:
        query = (
            "SELECT owner, value, type, modified_index, modified_id, ttl "
            "FROM locks WHERE path = ?"
        )
        if self.flavor != "sqlite":
            query += " FOR UPDATE"
        cursor.execute(self._sql(query), (key,))
        row = cursor.fetchone()
        if row is None:
            return None
        owner, value, lock_type, index, modified_id, ttl = row
        lock_type = lock_type or ""
        return Lock(
            resource=Resource(
                key=key,
                owner=owner or "",
                value=value or "",
                type=lock_type,
                type_code=get_type_code(lock_type),
            ),
            ttl_in_seconds=int(ttl or 0),
            modified_index=int(index or 0),
            modified_id=modified_id or "",
        )

    def lock(self, resource: Resource, ttl: int) -> Lock:
        """Acquire or refresh the lock on ``resource.key`` for its owner."""
        log = _log_data(resource)
        with self._transaction() as cursor:
            existing = self._fetch_lock(cursor, resource.key)
            if existing is not None and existing.resource.owner not in ("", resource.owner):
                logger.debug("lock-already-exists %s", log)
                raise LockCollisionError()

            index = existing.modified_index + 1 if existing else 1
            modified_id = existing.modified_id if existing else ""
            if not modified_id:
                modified_id = self._guid_provider()

            lock = Lock(
                resource=normalize_resource(resource),
                ttl_in_seconds=ttl,
                modified_index=index,
                modified_id=modified_id,
            )
            res = lock.resource
            values = (res.owner, res.value, res.type, index, modified_id, ttl)
            if existing is None:
                cursor.execute(
                    self._sql(
                        "INSERT INTO locks (path, owner, value, type, modified_index, "
                        "modified_id, ttl) VALUES (?, ?, ?, ?, ?, ?, ?)"
                    ),
                    (res.key, *values),
                )
            else:
                cursor.execute(
                    self._sql(
                        "UPDATE locks SET owner = ?, value = ?, type = ?, "
                        "modified_index = ?, modified_id = ?, ttl = ? WHERE path = ?"
                    ),
                    (*values, res.key),
                )
        if existing is None:
            logger.info("acquired-lock %s", log)
        return lock

    def release(self, resource: Resource) -> None:
        """Delete the lock if held by ``resource.owner``; a missing lock is fine."""
        log = _log_data(resource)
        with self._transaction() as cursor:
            existing = self._fetch_lock(cursor, resource.key)
            if existing is None:
                logger.debug("lock-does-not-exist %s", log)
                return
            if existing.resource.owner != resource.owner:
                logger.error("cannot-release-lock %s", log)
                raise LockCollisionError()
            cursor.execute(self._sql("DELETE FROM locks WHERE path = ?"), (resource.key,))
            logger.info("released-lock %s", log)

    def fetch(self, key: str) -> Lock:
        """Return the held lock for ``key``."""
        with self._transaction() as cursor:
            existing = self._fetch_lock(cursor, key)
        if existing is None or existing.resource.owner == "":
            raise ResourceNotFoundError()
        return existing

    def fetch_all(self, lock_type: str = "") -> list[Lock]:
        """Return every held lock, optionally only those of ``lock_type``."""
        query = (
            "SELECT path, owner, value, type, modified_index, modified_id, ttl FROM locks"
        )
        params: tuple[Any, ...] = ()
        if lock_type:
            query += " WHERE type = ?"
            params = (lock_type,)
        with self._transaction() as cursor:
            cursor.execute(self._sql(query), params)
            rows = cursor.fetchall()

        locks = []
        for key, owner, value, row_type, index, modified_id, ttl in rows:
            if not owner:
                continue
            row_type = row_type or ""
            locks.append(
                Lock(
                    resource=Resource(
                        key=key,
                        owner=owner,
                        value=value or "",
                        type=row_type,
                        type_code=get_type_code(row_type),
                    ),
                    ttl_in_seconds=int(ttl or 0),
                    modified_index=int(index or 0),
                    modified_id=modified_id or "",
                )
            )
        return locks

    def count(self, lock_type: str = "") -> int:
        """Count held locks, optionally only those of ``lock_type``."""
        query = "SELECT COUNT(*) FROM locks WHERE owner <> ?"
        params: list[Any] = [""]
        if lock_type:
            query += " AND type = ?"
            params.append(lock_type)
        with self._transaction() as cursor:
            cursor.execute(self._sql(query), tuple(params))
            (total,) = cursor.fetchone()
        return int(total)

    def fetch_and_release(self, lock: Lock) -> bool:
        """Delete the lock if it is unchanged; return whether it was deleted."""
        log = _log_data(lock.resource)
        try:
            with self._transaction() as cursor:
                fetched = self._fetch_lock(cursor, lock.resource.key)
                if fetched is None:
                    logger.debug("lock-does-not-exist %s", log)
                    raise ResourceNotFoundError()
                logger.info("fetched-lock %s", log)

                if fetched.resource.owner != lock.resource.owner:
                    logger.error("fetch-failed-owner-mismatch %s", log)
                    raise LockCollisionError()
                if fetched.modified_id != lock.modified_id:
                    logger.error("release-failed-id-mismatch %s", log)
                    raise LockCollisionError()
                if fetched.modified_index != lock.modified_index:
                    logger.error("release-failed-index-mismatch %s", log)
                    raise LockCollisionError()

                cursor.execute(
                    self._sql("DELETE FROM locks WHERE path = ?"), (fetched.resource.key,)
                )
                logger.info("released-lock %s", log)
        except ResourceNotFoundError:
            return False
        return True