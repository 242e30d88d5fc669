from abc import ABC, abstractmethod
from sqlalchemy import select, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
import logging
import redis

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import SequenceStorageError
from ..models.counter import SequenceCounter

logger = logging.getLogger(__name__)

class SequenceAllocator(ABC):
    """Named monotonic counters.

    ``next_value`` must be a single atomic read-modify-write in the store:
    two callers with the same key never see the same value. ``resync``
    overwrites a counter and must not run alongside live bookings.
    """

    @abstractmethod
    def next_value(self, key: str) -> int:
        ...

    @abstractmethod
    def resync(self, key: str, value: int) -> None:
        ...

    @abstractmethod
    def current_value(self, key: str) -> int:
        ...

class SqlSequenceAllocator(SequenceAllocator):
    """Counters kept in the ``sequence_counters`` table.

    Each call runs in its own short transaction so an increment is durable
    whatever happens to the caller's booking transaction.
    """

    _dialect_inserts = {
        "postgresql": postgresql.insert,
        "sqlite": sqlite.insert,
    }

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _upsert(self, session, key: str, insert_seq: int, update_seq):
        dialect = session.get_bind().dialect.name
        try:
            insert = self._dialect_inserts[dialect]
        except KeyError:
            raise SequenceStorageError(
                key, f"Atomic counters are not supported on '{dialect}'"
            )
        stmt = insert(SequenceCounter).values(key=key, seq=insert_seq)
        return stmt.on_conflict_do_update(
            index_elements=[SequenceCounter.key],
            set_={"seq": update_seq, "updated_at": func.now()},
        ).returning(SequenceCounter.seq)

    def next_value(self, key: str) -> int:
        try:
            with self.session_factory() as session:
                stmt = self._upsert(session, key, 1, SequenceCounter.seq + 1)
                value = session.execute(stmt).scalar_one()
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to advance sequence '{key}': {str(e)}")
            raise SequenceStorageError(key) from e
        return int(value)

    def resync(self, key: str, value: int) -> None:
        try:
            with self.session_factory() as session:
                session.execute(self._upsert(session, key, value, value))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to resync sequence '{key}' to {value}: {str(e)}")
            raise SequenceStorageError(key) from e
        logger.info(f"Sequence '{key}' resynced to {value}")

    def current_value(self, key: str) -> int:
        try:
            with self.session_factory() as session:
                value = session.execute(
                    select(SequenceCounter.seq).where(SequenceCounter.key == key)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read sequence '{key}': {str(e)}")
            raise SequenceStorageError(key) from e
        return int(value or 0)

class RedisSequenceAllocator(SequenceAllocator):
    """Counters kept as Redis integers, advanced with ``INCR``."""

    def __init__(self, client: redis.Redis, prefix: str = "sequence:"):
        self.client = client
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def next_value(self, key: str) -> int:
        try:
            return int(self.client.incr(self._key(key)))
        except redis.RedisError as e:
            logger.error(f"Failed to advance sequence '{key}': {str(e)}")
            raise SequenceStorageError(key) from e

    def resync(self, key: str, value: int) -> None:
        try:
            self.client.set(self._key(key), int(value))
        except redis.RedisError as e:
            logger.error(f"Failed to resync sequence '{key}' to {value}: {str(e)}")
            raise SequenceStorageError(key) from e
        logger.info(f"Sequence '{key}' resynced to {value}")

    def current_value(self, key: str) -> int:
        try:
            value = self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Failed to read sequence '{key}': {str(e)}")
            raise SequenceStorageError(key) from e
        return int(value or 0)

def build_sequence_allocator(
    session_factory: sessionmaker,
    redis_client: redis.Redis,
    config: Settings = default_settings,
) -> SequenceAllocator:
    """Pick the counter store configured by ``SEQUENCE_BACKEND``."""
    if config.SEQUENCE_BACKEND == "redis":
        return RedisSequenceAllocator(redis_client)
    return SqlSequenceAllocator(session_factory)
