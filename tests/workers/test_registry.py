"""Tests for the worker registry."""

import pytest

from resque_pool.workers.registry import WorkerRegistry


@pytest.fixture
def registry():
    registry = WorkerRegistry()
    registry.record(10, "foo")
    registry.record(11, "foo,bar")
    registry.record(12, "foo")
    return registry


class TestWorkerRegistry:
    def test_record(self, registry):
        worker = registry.record(13, "bar")
        assert worker.pid == 13
        assert worker.queue_spec == "bar"
        assert worker.stop_requested is False
        assert 13 in registry
        assert len(registry) == 4

    def test_sequence_increases(self, registry):
        sequences = [worker.sequence for worker in registry.all()]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == 3

    def test_duplicate_pid_rejected(self, registry):
        with pytest.raises(ValueError, match="already registered"):
            registry.record(10, "bar")

    def test_counts(self, registry):
        assert registry.count_for("foo") == 2
        assert registry.count_for("foo,bar") == 1
        assert registry.count_for("bar") == 0

    def test_for_queue(self, registry):
        assert [worker.pid for worker in registry.for_queue("foo")] == [10, 12]

    def test_queue_specs_in_spawn_order(self, registry):
        assert registry.queue_specs() == ["foo", "foo,bar"]

    def test_remove(self, registry):
        worker = registry.remove(10)
        assert worker.pid == 10
        assert 10 not in registry
        assert registry.count_for("foo") == 1

    def test_remove_unknown_pid(self, registry):
        assert registry.remove(999) is None
        assert len(registry) == 3

    def test_mark_stopping(self, registry):
        registry.mark_stopping(12)
        assert [worker.pid for worker in registry.all() if worker.stop_requested] == [12]
        assert [worker.pid for worker in registry.active_for("foo")] == [10]
        # Stopping workers stay registered until reaped
        assert registry.count_for("foo") == 2

    def test_mark_stopping_unknown_pid(self, registry):
        registry.mark_stopping(999)
        assert all(not worker.stop_requested for worker in registry.all())

    def test_pid_can_be_reused_after_removal(self, registry):
        registry.remove(10)
        worker = registry.record(10, "bar")
        assert worker.queue_spec == "bar"
