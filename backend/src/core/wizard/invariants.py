"""
Write path of the session document.

Every mutation runs ``normalize_session`` and then ``check_invariants``
before it is committed, in that order. Derived fields are never written by
callers directly.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from src.core.exceptions import InvariantViolation
from src.core.models import DeploymentSession, QueueItemStatus, SessionStatus
from src.core.schemas import SessionMetadata
from src.core.wizard.document import read_history, read_metadata, read_stage_data, write_metadata


def compute_progress(completed_stages: int, total_stages: int) -> int:
    if total_stages <= 0:
        return 0
    # Half-up rounding
    return int(math.floor(completed_stages / total_stages * 100 + 0.5))


def compute_metadata(row: DeploymentSession) -> SessionMetadata:
    """Recompute counters from the stage history and the live stage."""
    history = read_history(row)
    stage_data = read_stage_data(row)

    results = [r for record in history for r in record.data.execution_results]
    results.extend(stage_data.execution_results)
    analyses = sum(len(record.data.error_analyses) for record in history)
    analyses += len(stage_data.error_analyses)

    successful = sum(1 for r in results if r.success)
    return SessionMetadata(
        total_commands_executed=len(results),
        successful_commands=successful,
        failed_commands=len(results) - successful,
        total_error_analyses=analyses,
        resume_count=read_metadata(row).resume_count,
    )


def normalize_session(row: DeploymentSession, now: Optional[datetime] = None) -> None:
    """
    Recompute every derived field of the row.

    Fields are only assigned when their value changes, so a mutation that
    changed nothing does not produce an UPDATE.
    """
    completed = len({record.stage_id for record in read_history(row) if record.success})
    total = len(row.stage_sequence)
    progress = compute_progress(completed, total)

    if row.completed_stages != completed:
        row.completed_stages = completed
    if row.total_stages != total:
        row.total_stages = total
    if row.progress != progress:
        row.progress = progress

    metadata = compute_metadata(row)
    if read_metadata(row) != metadata:
        write_metadata(row, metadata)

    if row.status == SessionStatus.COMPLETED and row.completed_at is None:
        row.completed_at = now or datetime.now(timezone.utc)


def touch(row: DeploymentSession, now: Optional[datetime] = None) -> None:
    row.last_updated_at = now or datetime.now(timezone.utc)


def check_invariants(row: DeploymentSession, index_before: Optional[int] = None) -> None:
    """Raise InvariantViolation when the row is inconsistent."""
    sequence = row.stage_sequence
    index = row.current_stage_index

    if index_before is not None and index < index_before:
        raise InvariantViolation(
            f"Stage index moved backwards from {index_before} to {index}",
            {"deployment_id": row.deployment_id},
        )

    if row.status == SessionStatus.COMPLETED:
        if index != len(sequence) or row.current_stage_id is not None:
            raise InvariantViolation(
                "Completed session must point past the last stage",
                {"index": index, "stage": row.current_stage_id},
            )
    else:
        if not 0 <= index < len(sequence):
            raise InvariantViolation(
                f"Stage index {index} outside sequence of {len(sequence)}",
                {"index": index},
            )
        if row.current_stage_id != sequence[index]:
            raise InvariantViolation(
                f"Current stage {row.current_stage_id} does not match index {index}",
                {"expected": sequence[index], "actual": row.current_stage_id},
            )

    data = read_stage_data(row)
    running = [item for item in data.command_queue if item.status == QueueItemStatus.RUNNING]
    if len(running) > 1:
        raise InvariantViolation(
            f"{len(running)} commands marked running",
            {"commands": [item.command for item in running]},
        )
    if data.is_blocked != (data.blocking_error is not None):
        raise InvariantViolation("is_blocked disagrees with blocking_error")
    if data.current_command_index > len(data.command_queue):
        raise InvariantViolation(
            f"Command cursor {data.current_command_index} past queue of {len(data.command_queue)}"
        )
    orders = [item.order for item in data.command_queue]
    if any(b <= a for a, b in zip(orders, orders[1:])):
        raise InvariantViolation("Queue order is not strictly increasing", {"orders": orders})
