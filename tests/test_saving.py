"""Tests for batching, throttling and serializing diagram saves."""

import asyncio

import pytest

from fieldhub.schemas.diagram import DiagramGraph, DiagramNode, SavePriority
from fieldhub.services.ledger import LedgerError
from fieldhub.services.saving import SaveCoordinator


def graph(label):
    return DiagramGraph(nodes=[DiagramNode(id=label, type="mainBox")])


class RecordingStore:
    def __init__(self, delay=0.0, failures=0):
        self.writes = []
        self.delay = delay
        self.failures = failures
        self.active = {}
        self.max_active_per_job = 0
        self.max_active = 0

    async def persist(self, job_id, snapshot):
        self.active[job_id] = self.active.get(job_id, 0) + 1
        self.max_active_per_job = max(self.max_active_per_job, self.active[job_id])
        self.max_active = max(self.max_active, sum(self.active.values()))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                self.failures -= 1
                raise LedgerError("disk full")
            self.writes.append((job_id, snapshot.nodes[0].id, asyncio.get_running_loop().time()))
        finally:
            self.active[job_id] -= 1


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_rapid_requests_write_last_payload_once(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=0.05, min_interval=0.01)

        for label in ("first", "second", "third"):
            saver.request_save("J1", graph(label), reason=f"edit {label}")
        assert len(saver.get_status().pending) == 1

        await asyncio.sleep(0.15)
        await saver.wait_idle()

        assert [(job, label) for job, label, _ in store.writes] == [("J1", "third")]
        assert saver.get_status().pending == []
        await saver.close()

    @pytest.mark.asyncio
    async def test_snapshot_is_taken_at_request_time(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=0.01, min_interval=0.01)
        g = graph("before")
        saver.request_save("J1", g, reason="edit")
        g.nodes[0].id = "after"
        await saver.flush()
        assert store.writes[0][1] == "before"
        await saver.close()

    @pytest.mark.asyncio
    async def test_jobs_are_queued_separately(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=0.02, min_interval=0.01)
        saver.request_save("J1", graph("a"), reason="edit")
        saver.request_save("J2", graph("b"), reason="edit")
        await saver.flush()
        assert sorted((job, label) for job, label, _ in store.writes) == [("J1", "a"), ("J2", "b")]
        await saver.close()


class TestPriorityAndThrottle:
    @pytest.mark.asyncio
    async def test_high_priority_skips_debounce(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=5.0, min_interval=0.01)
        saver.request_save("J1", graph("urgent"), reason="allocation", priority=SavePriority.high)
        await asyncio.sleep(0.05)
        await saver.wait_idle()
        assert [label for _, label, _ in store.writes] == ["urgent"]
        await saver.close()

    @pytest.mark.asyncio
    async def test_writes_too_soon_are_rescheduled(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=5.0, min_interval=0.2)

        saver.request_save("J1", graph("one"), reason="allocation", priority=SavePriority.high)
        await asyncio.sleep(0.05)
        saver.request_save("J1", graph("two"), reason="allocation", priority=SavePriority.high)
        await asyncio.sleep(0.05)
        await saver.wait_idle()

        assert [label for _, label, _ in store.writes] == ["one"]
        assert saver.get_status().pending[0].reason == "allocation"

        await asyncio.sleep(0.3)
        await saver.wait_idle()
        labels = [label for _, label, _ in store.writes]
        assert labels == ["one", "two"]
        gap = store.writes[1][2] - store.writes[0][2]
        assert gap >= 0.19
        await saver.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_save_stays_pending(self):
        store = RecordingStore(failures=1)
        saver = SaveCoordinator(store.persist, batch_delay=0.01, min_interval=0.01)

        saver.request_save("J1", graph("draft"), reason="edit")
        await saver.flush()

        status = saver.get_status()
        assert store.writes == []
        assert [p.job_id for p in status.pending] == ["J1"]
        assert status.failures["J1"] == "disk full"

        await saver.flush()
        status = saver.get_status()
        assert [label for _, label, _ in store.writes] == ["draft"]
        assert status.pending == []
        assert status.failures == {}
        assert "J1" in status.last_saved
        await saver.close()

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_save_pending(self):
        async def broken_persist(job_id, snapshot):
            raise RuntimeError("boom")

        saver = SaveCoordinator(broken_persist, batch_delay=0.01, min_interval=0.01)
        saver.request_save("J1", graph("draft"), reason="edit", priority=SavePriority.high)
        await asyncio.sleep(0.05)
        await saver.wait_idle()

        status = saver.get_status()
        assert [p.job_id for p in status.pending] == ["J1"]
        assert status.failures["J1"] == "boom"
        assert saver.pending_graph("J1").nodes[0].id == "draft"
        saver.clear()
        await saver.close()

    @pytest.mark.asyncio
    async def test_failure_does_not_block_other_jobs(self):
        store = RecordingStore(failures=1)
        saver = SaveCoordinator(store.persist, batch_delay=0.01, min_interval=0.01)
        saver.request_save("J1", graph("a"), reason="edit")
        await saver.flush()
        saver.request_save("J2", graph("b"), reason="edit")
        await saver.flush("J2")
        assert [(job, label) for job, label, _ in store.writes] == [("J2", "b")]
        await saver.close()

    @pytest.mark.asyncio
    async def test_clear_drops_pending(self):
        store = RecordingStore()
        saver = SaveCoordinator(store.persist, batch_delay=0.05, min_interval=0.01)
        saver.request_save("J1", graph("a"), reason="edit")
        saver.clear()
        await asyncio.sleep(0.1)
        await saver.wait_idle()
        assert store.writes == []
        assert saver.get_status().pending == []
        await saver.close()


class TestLocking:
    @pytest.mark.asyncio
    async def test_one_write_per_job_at_a_time(self):
        store = RecordingStore(delay=0.05)
        saver = SaveCoordinator(store.persist, batch_delay=5.0, min_interval=0.0)

        saver.request_save("J1", graph("a1"), reason="edit", priority=SavePriority.high)
        saver.request_save("J2", graph("b1"), reason="edit", priority=SavePriority.high)
        await asyncio.sleep(0.01)
        # arrives while J1 is still writing
        saver.request_save("J1", graph("a2"), reason="edit", priority=SavePriority.high)
        assert saver.get_status().in_flight == ["J1", "J2"]

        await asyncio.sleep(0.2)
        await saver.wait_idle()

        assert store.max_active_per_job == 1
        assert store.max_active == 2
        assert [label for job, label, _ in store.writes if job == "J1"] == ["a1", "a2"]
        await saver.close()
