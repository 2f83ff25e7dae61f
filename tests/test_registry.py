"""Tests for the job registry and its active set."""

from postscheduler.scheduling.models import JobKind, JobRecord, JobState
from postscheduler.scheduling.registry import JobRegistry


class TestJobRegistry:
    """Tests for JobRegistry."""

    def test_put_and_get(self, make_config):
        registry = JobRegistry()
        record = JobRecord(config=make_config(), expression="0 13 15 6 *")
        assert registry.put(record) is None
        assert registry.get("post_1") is record
        assert "post_1" in registry
        assert len(registry) == 1

    def test_put_replaces_and_returns_previous(self, make_config):
        registry = JobRegistry()
        first = JobRecord(config=make_config(), expression="0 13 15 6 *")
        second = JobRecord(config=make_config(), expression="0 14 15 6 *")
        registry.put(first)
        assert registry.put(second) is first
        assert registry.get("post_1") is second
        assert len(registry) == 1

    def test_remove(self, make_config):
        registry = JobRegistry()
        record = JobRecord(config=make_config(), expression="0 13 15 6 *")
        registry.put(record)
        assert registry.remove("post_1") is record
        assert registry.remove("post_1") is None
        assert registry.get("post_1") is None

    def test_drain_all_empties_registry(self, make_config):
        registry = JobRegistry()
        registry.put(JobRecord(config=make_config("post_1"), expression="0 13 15 6 *"))
        registry.put(JobRecord(config=make_config("post_2"), expression="0 14 15 6 *"))
        drained = registry.drain_all()
        assert {r.job_id for r in drained} == {"post_1", "post_2"}
        assert len(registry) == 0

    def test_count_by_state(self, make_config):
        registry = JobRegistry()
        running = JobRecord(config=make_config("post_1"), expression="0 13 15 6 *")
        running.transition(JobState.RUNNING)
        registry.put(running)
        registry.put(
            JobRecord(config=make_config("recurring_1", kind=JobKind.RECURRING), expression="0 9 * * *")
        )
        counts = registry.count_by_state()
        assert counts["running"] == 1
        assert counts["pending"] == 1
        assert counts["failed"] == 0

    def test_iteration_is_a_snapshot(self, make_config):
        registry = JobRegistry()
        registry.put(JobRecord(config=make_config("post_1"), expression="0 13 15 6 *"))
        for record in registry:
            registry.remove(record.job_id)
        assert len(registry) == 0


class TestActiveSet:
    """Tests for the active-execution set."""

    def test_mark_and_release(self):
        registry = JobRegistry()
        registry.mark_active("post_1")
        registry.mark_active("post_2")
        assert registry.active_count == 2
        assert registry.is_active("post_1")
        assert registry.active_ids == frozenset({"post_1", "post_2"})

        registry.release("post_1")
        registry.release("post_1")
        assert registry.active_ids == frozenset({"post_2"})

    def test_active_set_survives_drain(self, make_config):
        registry = JobRegistry()
        registry.put(JobRecord(config=make_config(), expression="0 13 15 6 *"))
        registry.mark_active("post_1")
        registry.drain_all()
        assert registry.active_count == 1
