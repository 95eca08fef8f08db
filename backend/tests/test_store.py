"""
DeployForge - Session Store Tests
=================================

Optimistic locking, invariant enforcement and derived fields.
"""

import asyncio

import pytest

from src.core.exceptions import InvariantViolation, NotFoundError, StateConflict
from src.core.models import DeploymentSession, SessionStatus
from src.core.wizard.document import read_stage_data, write_stage_data
from src.core.wizard.invariants import compute_progress
from src.core.wizard.state_machine import StageStateMachine
from src.core.wizard.store import SessionStore


async def _racing_writes(store: SessionStore, retries: int) -> tuple[object, list[str]]:
    """
    Writer B loads the row, then writer A commits before B flushes.

    Returns B's outcome (result or exception) and the order fn calls ran in.
    """
    b_loaded = asyncio.Event()
    a_done = asyncio.Event()
    calls: list[str] = []

    async def write_b(row: DeploymentSession) -> str:
        calls.append("b")
        b_loaded.set()
        await a_done.wait()
        row.failure_reason = "written by b"
        return "b"

    def write_a(row: DeploymentSession) -> str:
        calls.append("a")
        row.failure_reason = "written by a"
        return "a"

    async def writer_a() -> None:
        await b_loaded.wait()
        await store.mutate("dep-1", write_a)
        a_done.set()

    results = await asyncio.gather(
        store.mutate("dep-1", write_b, retries=retries),
        writer_a(),
        return_exceptions=True,
    )
    return results[0], calls


class TestOptimisticLocking:
    """A stale write is detected, never silently applied."""

    async def test_conflict_raised_without_retries(self, store: SessionStore, deployment: DeploymentSession):
        outcome, calls = await _racing_writes(store, retries=0)

        assert isinstance(outcome, StateConflict)
        assert calls == ["b", "a"]
        row = await store.load("dep-1")
        assert row.failure_reason == "written by a"

    async def test_conflict_retried_on_fresh_row(self, store: SessionStore, deployment: DeploymentSession):
        outcome, calls = await _racing_writes(store, retries=1)

        assert outcome == "b"
        assert calls == ["b", "a", "b"]
        row = await store.load("dep-1")
        assert row.failure_reason == "written by b"

    async def test_version_increments(self, store: SessionStore, deployment: DeploymentSession):
        before = (await store.load("dep-1")).version

        def change(row: DeploymentSession) -> None:
            row.failure_reason = "changed"

        await store.mutate("dep-1", change)

        assert (await store.load("dep-1")).version == before + 1

    async def test_noop_mutation_does_not_write(self, store: SessionStore, deployment: DeploymentSession):
        before = await store.load("dep-1")

        await store.mutate("dep-1", lambda row: None)

        after = await store.load("dep-1")
        assert after.version == before.version
        assert after.last_updated_at == before.last_updated_at


class TestInvariantEnforcement:
    """Writes that would corrupt the document are rejected and rolled back."""

    async def test_index_cannot_move_backwards(self, state_machine: StageStateMachine, deployment: DeploymentSession):
        await state_machine.complete_current_stage("dep-1")

        def rewind(row: DeploymentSession) -> None:
            row.current_stage_index = 0
            row.current_stage_id = row.stage_sequence[0]

        with pytest.raises(InvariantViolation):
            await state_machine.store.mutate("dep-1", rewind)
        assert (await state_machine.get("dep-1")).current_stage_index == 1

    async def test_blocked_flag_must_match_error(self, store: SessionStore, deployment: DeploymentSession):
        def half_block(row: DeploymentSession) -> None:
            data = read_stage_data(row)
            data.is_blocked = True
            write_stage_data(row, data)

        with pytest.raises(InvariantViolation):
            await store.mutate("dep-1", half_block)

    async def test_derived_fields_recomputed(self, store: SessionStore, deployment: DeploymentSession):
        def tamper(row: DeploymentSession) -> None:
            row.progress = 99
            row.completed_stages = 5

        await store.mutate("dep-1", tamper)

        row = await store.load("dep-1")
        assert row.progress == 0
        assert row.completed_stages == 0

    async def test_missing_row(self, store: SessionStore):
        with pytest.raises(NotFoundError):
            await store.mutate("nope", lambda row: None)


class TestListSessions:

    async def test_filter_by_status(self, state_machine: StageStateMachine, store: SessionStore):
        await state_machine.find_or_create("dep-a", owner_id="owner-1")
        await state_machine.find_or_create("dep-b", owner_id="owner-2")
        await state_machine.pause("dep-b")

        paused = await store.list_sessions(status=SessionStatus.PAUSED)
        mine = await store.list_sessions(owner_id="owner-1")

        assert [row.deployment_id for row in paused] == ["dep-b"]
        assert [row.deployment_id for row in mine] == ["dep-a"]


@pytest.mark.parametrize(
    "completed,total,expected",
    [(0, 8, 0), (1, 8, 13), (3, 8, 38), (1, 3, 33), (2, 3, 67), (8, 8, 100), (0, 0, 0)],
)
def test_compute_progress(completed: int, total: int, expected: int):
    assert compute_progress(completed, total) == expected
