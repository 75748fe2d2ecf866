"""Tests for the job queue (Redis Streams and in-memory)."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import redis
from freezegun import freeze_time

from ordersync.bus import CONSUMER_GROUP, STREAM_JOBS, InMemoryJobQueue, Job, JobQueue, RedisJobQueue
from ordersync.errors import EnqueueFailure
from ordersync.webhooks.gate import ACCEPTED, IngestGate
from ordersync.webhooks.idempotency import InMemoryDedupStore


def _job(job_id: str = "wh-1") -> Job:
    return Job(job_id=job_id, topic="orders/create", payload={"id": 1, "total_price": "10.00"})


def _mock_redis() -> MagicMock:
    mock_r = MagicMock()
    mock_r.register_script.return_value.return_value = "1700000000000-0"
    mock_r.xautoclaim.return_value = ("0-0", [], [])
    return mock_r


class TestRedisEnqueue:
    """Job-id reservation and XADD in one server-side script."""

    def test_new_job_is_added(self):
        mock_r = _mock_redis()
        job = _job()
        assert RedisJobQueue(mock_r).enqueue(job) is True
        script = mock_r.register_script.return_value
        keys = script.call_args.kwargs["keys"]
        args = script.call_args.kwargs["args"]
        assert keys == ["ordersync:job:wh-1", STREAM_JOBS]
        assert args[0] == 86400
        assert args[2] == "wh-1"
        assert json.loads(args[4]) == {"id": 1, "total_price": "10.00"}
        assert job.entry_id == "1700000000000-0"

    def test_script_reserves_and_appends_together(self):
        mock_r = _mock_redis()
        RedisJobQueue(mock_r)
        (source,) = mock_r.register_script.call_args.args
        assert "'NX'" in source
        assert "XADD" in source
        assert source.index("'SET'") < source.index("XADD")

    def test_no_separate_round_trips(self):
        mock_r = _mock_redis()
        RedisJobQueue(mock_r).enqueue(_job())
        mock_r.set.assert_not_called()
        mock_r.xadd.assert_not_called()

    def test_known_job_id_is_not_added_twice(self):
        mock_r = _mock_redis()
        mock_r.register_script.return_value.return_value = None  # SET NX lost: key exists
        job = _job()
        assert RedisJobQueue(mock_r).enqueue(job) is False
        assert job.entry_id == ""

    def test_script_failure_raises(self):
        mock_r = _mock_redis()
        mock_r.register_script.return_value.side_effect = redis.ConnectionError("down")
        with pytest.raises(EnqueueFailure):
            RedisJobQueue(mock_r).enqueue(_job())

    def test_interrupted_enqueue_is_not_reported_duplicate(self):
        """A delivery cut off mid-enqueue is accepted when the platform retries."""
        mock_r = _mock_redis()
        script = mock_r.register_script.return_value
        script.side_effect = [redis.ConnectionError("connection lost"), "1700000000001-0"]
        gate = IngestGate(InMemoryDedupStore(), RedisJobQueue(mock_r), MagicMock())
        payload = {"id": 1, "total_price": "10.00"}

        with pytest.raises(EnqueueFailure):
            gate.ingest("wh-1", "orders/create", payload)
        result = gate.ingest("wh-1", "orders/create", payload)

        assert result.status == ACCEPTED
        assert script.call_count == 2


class TestRedisConsume:
    """XREADGROUP / XAUTOCLAIM / XACK."""

    def test_reserve_decodes_new_entries(self):
        mock_r = _mock_redis()
        mock_r.xreadgroup.return_value = [
            (STREAM_JOBS, [("1-0", {
                "job_id": "wh-1",
                "topic": "orders/create",
                "payload": '{"id": 1}',
                "enqueued_at": "1700000000.0",
            })]),
        ]
        jobs = RedisJobQueue(mock_r).reserve("worker-0")
        assert [(j.job_id, j.entry_id, j.payload) for j in jobs] == [("wh-1", "1-0", {"id": 1})]

    def test_stale_jobs_are_reclaimed_first(self):
        mock_r = _mock_redis()
        mock_r.xautoclaim.return_value = (
            "0-0",
            [("1-0", {"job_id": "wh-9", "topic": "t", "payload": "{}"})],
            [],
        )
        jobs = RedisJobQueue(mock_r, claim_idle_ms=30_000).reserve("worker-1")
        assert [j.job_id for j in jobs] == ["wh-9"]
        assert jobs[0].attempts == 1
        mock_r.xreadgroup.assert_not_called()
        assert mock_r.xautoclaim.call_args.kwargs["min_idle_time"] == 30_000

    def test_unreadable_entry_is_acknowledged_and_skipped(self):
        mock_r = _mock_redis()
        mock_r.xreadgroup.return_value = [(STREAM_JOBS, [("2-0", {"payload": "not json"})])]
        assert RedisJobQueue(mock_r).reserve("worker-0") == []
        mock_r.xack.assert_called_once_with(STREAM_JOBS, CONSUMER_GROUP, "2-0")

    def test_ack(self):
        mock_r = _mock_redis()
        job = _job()
        job.entry_id = "5-0"
        RedisJobQueue(mock_r).ack(job)
        mock_r.xack.assert_called_once_with(STREAM_JOBS, CONSUMER_GROUP, "5-0")

    def test_ensure_group_is_idempotent(self):
        mock_r = _mock_redis()
        mock_r.xgroup_create.side_effect = redis.ResponseError(
            "BUSYGROUP Consumer Group name already exists"
        )
        RedisJobQueue(mock_r).ensure_group()  # no exception

    def test_ensure_group_other_errors_raise(self):
        mock_r = _mock_redis()
        mock_r.xgroup_create.side_effect = redis.ResponseError("WRONGTYPE")
        with pytest.raises(redis.ResponseError):
            RedisJobQueue(mock_r).ensure_group()

    def test_satisfies_protocol(self):
        assert isinstance(RedisJobQueue(_mock_redis()), JobQueue)


class TestInMemoryJobQueue:
    """Same contract, in process."""

    def test_duplicate_job_id_is_ignored(self):
        queue = InMemoryJobQueue()
        assert queue.enqueue(_job("wh-1")) is True
        assert queue.enqueue(_job("wh-1")) is False
        assert queue.ready_count() == 1

    def test_reserve_and_ack(self):
        queue = InMemoryJobQueue()
        queue.enqueue(_job("wh-1"))
        queue.enqueue(_job("wh-2"))
        jobs = queue.reserve("w", count=10)
        assert [j.job_id for j in jobs] == ["wh-1", "wh-2"]
        assert queue.pending_count() == 2
        for job in jobs:
            queue.ack(job)
        assert queue.pending_count() == 0
        assert queue.reserve("w") == []

    def test_release_redelivers(self):
        queue = InMemoryJobQueue()
        queue.enqueue(_job("wh-1"))
        (job,) = queue.reserve("w")
        queue.release(job)
        (again,) = queue.reserve("w")
        assert again.job_id == "wh-1"
        assert again.attempts == 1

    def test_same_job_id_never_runs_concurrently(self):
        queue = InMemoryJobQueue(job_ttl_seconds=0)  # dedup window closed at once
        queue.enqueue(_job("wh-1"))
        (first,) = queue.reserve("w")
        queue.enqueue(_job("wh-1"))
        assert queue.reserve("w") == []
        queue.ack(first)
        (second,) = queue.reserve("w")
        assert second.job_id == "wh-1"

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryJobQueue(), JobQueue)

    def test_expired_job_ids_are_swept(self):
        with freeze_time("2026-01-01 00:00:00") as frozen:
            queue = InMemoryJobQueue(job_ttl_seconds=60)
            for i in range(50):
                queue.enqueue(_job(f"wh-{i}"))
            assert queue.known_count() == 50
            frozen.tick(delta=timedelta(seconds=61))
            queue.enqueue(_job("wh-new"))
            assert queue.known_count() == 1
            # the old id is admitted again once its window closed
            assert queue.enqueue(_job("wh-0")) is True
