import pytest
import fakeredis
import redis
from concurrent.futures import ThreadPoolExecutor
from threading import Barrier
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import Settings
from app.core.exceptions import SequenceStorageError
from app.services.sequence_allocator import (
    RedisSequenceAllocator, SequenceAllocator, SqlSequenceAllocator, build_sequence_allocator,
)

class TestSqlSequenceAllocator:

    def test_interface_is_abstract(self):
        with pytest.raises(TypeError):
            SequenceAllocator()

    def test_first_value_is_one(self, allocator):
        """A missing counter starts at 0 and is incremented."""
        assert allocator.next_value("bookingNumber") == 1
        assert allocator.next_value("bookingNumber") == 2
        assert allocator.current_value("bookingNumber") == 2

    def test_keys_are_independent(self, allocator):
        assert allocator.next_value("doctorQueueNumber:1") == 1
        assert allocator.next_value("doctorQueueNumber:2") == 1
        assert allocator.next_value("doctorQueueNumber:1") == 2

    def test_current_value_of_missing_key(self, allocator):
        assert allocator.current_value("never-used") == 0

    def test_resync_sets_counter(self, allocator):
        allocator.next_value("bookingNumber")
        allocator.resync("bookingNumber", 40)
        assert allocator.current_value("bookingNumber") == 40
        assert allocator.next_value("bookingNumber") == 41

    def test_resync_creates_missing_counter(self, allocator):
        allocator.resync("doctorQueueNumber:9", 5)
        assert allocator.next_value("doctorQueueNumber:9") == 6

    def test_concurrent_callers_get_distinct_values(self, allocator):
        """Counter at 57, ten threads: exactly 58..67."""
        allocator.resync("bookingNumber", 57)
        barrier = Barrier(10)

        def take():
            barrier.wait()
            return allocator.next_value("bookingNumber")

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: take(), range(10)))

        assert sorted(results) == list(range(58, 68))
        assert allocator.current_value("bookingNumber") == 67

    def test_unsupported_dialect_raises_storage_error(self, engine, monkeypatch):
        allocator = SqlSequenceAllocator(sessionmaker(bind=engine))
        monkeypatch.setattr(SqlSequenceAllocator, "_dialect_inserts", {})
        with pytest.raises(SequenceStorageError):
            allocator.next_value("bookingNumber")

    def test_read_without_table_raises_storage_error(self):
        """Reading a counter from a database without the sequences table."""
        allocator = SqlSequenceAllocator(sessionmaker(bind=create_engine("sqlite://")))
        with pytest.raises(SequenceStorageError) as exc_info:
            allocator.current_value("bookingNumber")
        assert exc_info.value.key == "bookingNumber"

class TestRedisSequenceAllocator:

    @pytest.fixture
    def client(self):
        return fakeredis.FakeRedis(decode_responses=True)

    def test_incr_and_resync(self, client):
        allocator = RedisSequenceAllocator(client)
        assert allocator.next_value("bookingNumber") == 1
        assert allocator.next_value("bookingNumber") == 2
        allocator.resync("bookingNumber", 57)
        assert allocator.next_value("bookingNumber") == 58
        assert client.get("sequence:bookingNumber") == "58"

    def test_current_value(self, client):
        allocator = RedisSequenceAllocator(client)
        assert allocator.current_value("doctorQueueNumber:3") == 0
        allocator.next_value("doctorQueueNumber:3")
        assert allocator.current_value("doctorQueueNumber:3") == 1

    def test_redis_failure_raises_storage_error(self, client, monkeypatch):
        allocator = RedisSequenceAllocator(client)

        def broken_incr(key):
            raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(client, "incr", broken_incr)
        with pytest.raises(SequenceStorageError) as exc_info:
            allocator.next_value("bookingNumber")
        assert exc_info.value.key == "bookingNumber"

    def test_redis_read_failure_raises_storage_error(self, client, monkeypatch):
        allocator = RedisSequenceAllocator(client)

        def broken_get(key):
            raise redis.ConnectionError("connection refused")

        monkeypatch.setattr(client, "get", broken_get)
        with pytest.raises(SequenceStorageError):
            allocator.current_value("bookingNumber")

def test_build_sequence_allocator_follows_settings(session_factory):
    client = fakeredis.FakeRedis(decode_responses=True)

    sql = build_sequence_allocator(session_factory, client, Settings(SEQUENCE_BACKEND="database"))
    assert isinstance(sql, SqlSequenceAllocator)

    in_redis = build_sequence_allocator(session_factory, client, Settings(SEQUENCE_BACKEND="redis"))
    assert isinstance(in_redis, RedisSequenceAllocator)
