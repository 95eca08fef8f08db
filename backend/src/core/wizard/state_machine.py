"""
Stage State Machine
===================

Owns the lifecycle of a deployment session:

    active ──pause──▶ paused ──resume──▶ active
      │                 │
      ├──cancel/fail────┴──▶ cancelled / failed   (terminal)
      │
      └──complete last stage──▶ completed          (terminal)

Within an active session each stage moves through
not-started → running → blocked → verifying → advanced | stuck. The stage
sub-state is not stored; it is read off the StageData.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import InvalidTransition, NotFoundError, ValidationFailure
from src.core.models import (
    TERMINAL_SESSION_STATES,
    DeploymentSession,
    LogStream,
    QueueItemStatus,
    SessionStatus,
)
from src.core.schemas import (
    BlockingError,
    CommandLogEntry,
    ErrorAnalysis,
    ExecutionResult,
    GeneratedCommand,
    QueueItem,
    SessionMetadata,
    SessionSummary,
    StageData,
    StageListEntry,
    StageRecord,
    project_context_adapter,
)
from src.core.wizard.classifier import parse_commands_from_markdown
from src.core.wizard.completion import StageContext
from src.core.wizard.document import (
    append_history,
    read_history,
    read_metadata,
    read_project_context,
    read_stage_data,
    write_metadata,
    write_stage_data,
)
from src.core.wizard.limits import truncate_text
from src.core.wizard.stages import build_stage_sequence, get_stage
from src.core.wizard.store import SessionStore

logger = structlog.get_logger()

INTERRUPTED_MESSAGE = "interrupted: the process stopped while this command was running"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Pure StageData helpers
# ==========================================================================

def append_terminal_log(data: StageData, text: str, limit_bytes: int) -> None:
    """Append to the stage terminal log; once truncated, further text is dropped."""
    if data.terminal_log_truncated or not text:
        return
    result = truncate_text(data.terminal_log + text, limit_bytes)
    data.terminal_log = result.text
    data.terminal_log_truncated = result.truncated


def add_command_log(
    data: StageData,
    message: str,
    stream: LogStream,
    config: Settings,
    command: Optional[str] = None,
    mirror: bool = True,
) -> CommandLogEntry:
    """Add a structured log entry, mirrored into the terminal log unless ``mirror`` is off."""
    line = truncate_text(message, config.LOG_LINE_MAX_BYTES)
    entry = CommandLogEntry(
        stream=stream,
        command=command,
        message=line.text,
        truncated=line.truncated,
    )
    logs = [*data.command_logs, entry]
    if len(logs) > config.COMMAND_LOG_MAX_ENTRIES:
        logs = logs[-config.COMMAND_LOG_KEEP_ENTRIES:]
    data.command_logs = logs

    if not mirror:
        return entry
    prefix = f"[{stream.value}] "
    append_terminal_log(data, prefix + line.text + "\n", config.TERMINAL_LOG_MAX_BYTES)
    return entry


def execution_result_from(item: QueueItem) -> ExecutionResult:
    return ExecutionResult(
        command=item.command,
        kind=item.kind,
        exit_code=item.exit_code if item.exit_code is not None else 1,
        output=item.output,
        output_truncated=item.output_truncated,
        success=item.exit_code == 0,
        duration_ms=item.duration_ms or 0,
        is_fix_command=item.is_fix_command,
        is_retry_command=item.is_retry_command,
        via_tool=item.via_tool,
        fallback=item.fallback,
    )


def demote_running_items(data: StageData, config: Settings, now: Optional[datetime] = None) -> int:
    """
    Turn items left ``running`` by a dead process into failures.

    The first demoted item blocks the stage unless it is already blocked.
    """
    now = now or _now()
    demoted = 0
    for index, item in enumerate(data.command_queue):
        if item.status != QueueItemStatus.RUNNING:
            continue
        item.status = QueueItemStatus.FAILED
        item.completed_at = now
        item.exit_code = item.exit_code if item.exit_code is not None else 1
        item.output = truncate_text(
            (item.output + "\n" if item.output else "") + INTERRUPTED_MESSAGE,
            config.COMMAND_OUTPUT_MAX_BYTES,
        ).text
        demoted += 1
        if not data.is_blocked:
            data.is_blocked = True
            data.blocking_error = BlockingError(
                command=item.command,
                exit_code=item.exit_code,
                error_output=INTERRUPTED_MESSAGE,
                fix_attempts=data.fix_attempts.get(item.command, 0),
                queue_index=index,
                raised_at=now,
            )
            data.current_command_index = index
        add_command_log(data, f"{item.command}: {INTERRUPTED_MESSAGE}", LogStream.ERROR, config, item.command)
    return demoted


def apply_stage_completion(
    row: DeploymentSession,
    success: bool,
    notes: str = "",
    now: Optional[datetime] = None,
) -> StageRecord:
    """
    Freeze the live stage into history and reset StageData.

    On success the index advances; past the last stage the session
    completes. On failure the index stays where it is.
    """
    now = now or _now()
    data = read_stage_data(row)
    stage = get_stage(row.current_stage_id)
    record = StageRecord(
        stage_id=stage.id,
        stage_name=stage.name,
        stage_description=stage.description,
        stage_index=row.current_stage_index,
        success=success,
        notes=notes,
        started_at=data.started_at,
        completed_at=now,
        data=data,
    )
    append_history(row, record)

    if success:
        row.current_stage_index += 1
        if row.current_stage_index >= len(row.stage_sequence):
            row.current_stage_id = None
            row.status = SessionStatus.COMPLETED
            row.completed_at = now
        else:
            row.current_stage_id = row.stage_sequence[row.current_stage_index]

    write_stage_data(row, StageData(started_at=now))
    return record


def _require_status(row: DeploymentSession, allowed: set[SessionStatus], action: str) -> None:
    if row.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} a session that is {row.status.value}",
            current_status=row.status.value,
            details={"deployment_id": row.deployment_id},
        )


# ==========================================================================
# State Machine
# ==========================================================================

class StageStateMachine:
    """
    Persisted stage state machine.

    Every operation is a single ``SessionStore.mutate`` call, so each one
    either fully applies or leaves the stored document untouched.
    """

    def __init__(self, store: SessionStore, config: Optional[Settings] = None):
        self.store = store
        self.config = config or default_settings

    # ----------------------------------------------------------------------
    # Creation & lookup
    # ----------------------------------------------------------------------

    async def find_or_create(
        self,
        deployment_id: str,
        owner_id: str,
        initial_stage: Optional[str] = None,
        stage_ids: Optional[list[str]] = None,
        project_context: Optional[Union[dict[str, Any], Any]] = None,
    ) -> DeploymentSession:
        """Return the session for ``deployment_id``, creating it on first use."""
        try:
            return await self.store.load(deployment_id)
        except NotFoundError:
            pass

        sequence = build_stage_sequence(stage_ids)
        index = 0
        if initial_stage is not None:
            if initial_stage not in sequence:
                raise ValidationFailure(
                    f"Initial stage {initial_stage} is not part of the sequence",
                    {"initial_stage": initial_stage, "sequence": sequence},
                )
            index = sequence.index(initial_stage)

        context = None
        if project_context is not None:
            raw = project_context.model_dump() if hasattr(project_context, "model_dump") else project_context
            try:
                validated = project_context_adapter.validate_python(raw)
            except ValidationError as e:
                raise ValidationFailure("Invalid project context", {"errors": e.errors(include_url=False)}) from e
            context = project_context_adapter.dump_python(validated, mode="json")

        now = _now()
        row = DeploymentSession(
            deployment_id=deployment_id,
            owner_id=owner_id,
            stage_sequence=sequence,
            current_stage_index=index,
            current_stage_id=sequence[index],
            current_stage_data=StageData(started_at=now).model_dump(mode="json"),
            stage_history=[],
            project_context=context,
            status=SessionStatus.ACTIVE,
            total_stages=len(sequence),
            completed_stages=0,
            progress=0,
            session_metadata=SessionMetadata().model_dump(mode="json"),
            started_at=now,
            last_updated_at=now,
        )
        row, created = await self.store.create(row)
        if created:
            logger.info(
                "session_created",
                deployment_id=deployment_id,
                owner_id=owner_id,
                stages=len(sequence),
                initial_stage=sequence[index],
            )
        return row

    async def get(self, deployment_id: str) -> DeploymentSession:
        return await self.store.load(deployment_id)

    async def get_stage_data(self, deployment_id: str) -> StageData:
        return read_stage_data(await self.store.load(deployment_id))

    # ----------------------------------------------------------------------
    # Stage transitions
    # ----------------------------------------------------------------------

    async def complete_current_stage(
        self,
        deployment_id: str,
        success: bool = True,
        notes: str = "",
        stage_id: Optional[str] = None,
    ) -> DeploymentSession:
        """
        Archive the current stage and advance on success.

        When ``stage_id`` names a stage that already completed successfully
        the call is a no-op, which makes retried completions safe.
        """
        def complete(row: DeploymentSession) -> DeploymentSession:
            if stage_id is not None and stage_id != row.current_stage_id:
                done = {r.stage_id for r in read_history(row) if r.success}
                if stage_id in done:
                    logger.info("stage_already_completed", deployment_id=deployment_id, stage=stage_id)
                    return row
                raise InvalidTransition(
                    f"Stage {stage_id} is not the current stage",
                    current_status=row.status.value,
                    details={"current_stage": row.current_stage_id, "requested": stage_id},
                )
            _require_status(row, {SessionStatus.ACTIVE}, "complete a stage of")
            record = apply_stage_completion(row, success, notes)
            logger.info(
                "stage_completed",
                deployment_id=deployment_id,
                stage=record.stage_id,
                success=success,
                next_stage=row.current_stage_id,
                status=row.status.value,
            )
            return row

        return await self.store.mutate(deployment_id, complete)

    # ----------------------------------------------------------------------
    # Append-only stage data
    # ----------------------------------------------------------------------

    async def record_execution_result(self, deployment_id: str, item: QueueItem) -> None:
        def record(row: DeploymentSession) -> None:
            data = read_stage_data(row)
            data.execution_results = [*data.execution_results, execution_result_from(item)]
            write_stage_data(row, data)

        await self.store.mutate(deployment_id, record)

    async def record_error_analysis(self, deployment_id: str, analysis: ErrorAnalysis) -> None:
        def record(row: DeploymentSession) -> None:
            data = read_stage_data(row)
            data.error_analyses = [*data.error_analyses, analysis]
            write_stage_data(row, data)

        await self.store.mutate(deployment_id, record)

    async def append_terminal_log(self, deployment_id: str, text: str) -> None:
        def append(row: DeploymentSession) -> None:
            data = read_stage_data(row)
            append_terminal_log(data, text, self.config.TERMINAL_LOG_MAX_BYTES)
            write_stage_data(row, data)

        await self.store.mutate(deployment_id, append)

    async def save_command_log(
        self,
        deployment_id: str,
        message: str,
        stream: LogStream = LogStream.INFO,
        command: Optional[str] = None,
    ) -> CommandLogEntry:
        def save(row: DeploymentSession) -> CommandLogEntry:
            data = read_stage_data(row)
            entry = add_command_log(data, message, stream, self.config, command)
            write_stage_data(row, data)
            return entry

        return await self.store.mutate(deployment_id, save)

    async def set_instructions(
        self,
        deployment_id: str,
        instructions: str,
        commands: Optional[list[GeneratedCommand]] = None,
    ) -> StageData:
        """Store the assistant's instructions and the commands proposed with them."""
        if commands is None:
            commands = [GeneratedCommand(**c) for c in parse_commands_from_markdown(instructions)]

        def save(row: DeploymentSession) -> StageData:
            _require_status(row, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, "instruct")
            data = read_stage_data(row)
            data.instructions = instructions
            data.generated_commands = list(commands)
            write_stage_data(row, data)
            return data

        return await self.store.mutate(deployment_id, save)

    # ----------------------------------------------------------------------
    # Session lifecycle
    # ----------------------------------------------------------------------

    async def pause(self, deployment_id: str) -> DeploymentSession:
        def pause(row: DeploymentSession) -> DeploymentSession:
            _require_status(row, {SessionStatus.ACTIVE}, "pause")
            row.status = SessionStatus.PAUSED
            return row

        row = await self.store.mutate(deployment_id, pause)
        logger.info("session_paused", deployment_id=deployment_id)
        return row

    async def resume(self, deployment_id: str) -> DeploymentSession:
        """Resume a session, demoting any command left running by a crash."""
        def resume(row: DeploymentSession) -> DeploymentSession:
            _require_status(row, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, "resume")
            row.status = SessionStatus.ACTIVE

            data = read_stage_data(row)
            if demote_running_items(data, self.config):
                write_stage_data(row, data)

            metadata = read_metadata(row)
            metadata.resume_count += 1
            write_metadata(row, metadata)
            return row

        row = await self.store.mutate(deployment_id, resume)
        logger.info(
            "session_resumed",
            deployment_id=deployment_id,
            resume_count=read_metadata(row).resume_count,
        )
        return row

    async def cancel(self, deployment_id: str, reason: str = "") -> DeploymentSession:
        return await self._terminate(deployment_id, SessionStatus.CANCELLED, reason or "cancelled")

    async def fail(self, deployment_id: str, reason: str) -> DeploymentSession:
        return await self._terminate(deployment_id, SessionStatus.FAILED, reason)

    async def _terminate(
        self, deployment_id: str, status: SessionStatus, reason: str
    ) -> DeploymentSession:
        def terminate(row: DeploymentSession) -> DeploymentSession:
            action = "cancel" if status == SessionStatus.CANCELLED else "fail"
            _require_status(row, {SessionStatus.ACTIVE, SessionStatus.PAUSED}, action)
            row.status = status
            row.failure_reason = reason
            return row

        row = await self.store.mutate(deployment_id, terminate)
        logger.warning("session_terminated", deployment_id=deployment_id, status=status.value, reason=reason)
        return row

    # ----------------------------------------------------------------------
    # Crash recovery
    # ----------------------------------------------------------------------

    async def recover_interrupted(self, deployment_id: str) -> int:
        """Demote running items of one session. Returns how many were demoted."""
        def recover(row: DeploymentSession) -> int:
            if row.status in TERMINAL_SESSION_STATES:
                return 0
            data = read_stage_data(row)
            demoted = demote_running_items(data, self.config)
            if demoted:
                write_stage_data(row, data)
            return demoted

        demoted = await self.store.mutate(deployment_id, recover)
        if demoted:
            logger.warning("interrupted_commands_demoted", deployment_id=deployment_id, count=demoted)
        return demoted

    async def recover_all_interrupted(self) -> dict[str, int]:
        """Run interrupted-command recovery over every live session."""
        rows = await self.store.list_sessions(status=[SessionStatus.ACTIVE, SessionStatus.PAUSED])
        recovered: dict[str, int] = {}
        for row in rows:
            demoted = await self.recover_interrupted(row.deployment_id)
            if demoted:
                recovered[row.deployment_id] = demoted
        return recovered

    # ----------------------------------------------------------------------
    # Read models
    # ----------------------------------------------------------------------

    async def get_stage_history(
        self, deployment_id: str, stage_id: Optional[str] = None
    ) -> list[StageRecord]:
        history = read_history(await self.store.load(deployment_id))
        if stage_id is not None:
            history = [record for record in history if record.stage_id == stage_id]
        return history

    async def get_session_summary(self, deployment_id: str) -> SessionSummary:
        row = await self.store.load(deployment_id)
        return build_session_summary(row)


def build_session_summary(row: DeploymentSession) -> SessionSummary:
    done = {record.stage_id for record in read_history(row) if record.success}
    stages = []
    for stage_id in row.stage_sequence:
        if stage_id in done:
            state = "completed"
        elif stage_id == row.current_stage_id:
            state = "current"
        else:
            state = "pending"
        stages.append(StageListEntry(stage_id=stage_id, name=get_stage(stage_id).name, state=state))

    data = read_stage_data(row)
    current = get_stage(row.current_stage_id) if row.current_stage_id else None
    return SessionSummary(
        deployment_id=row.deployment_id,
        owner_id=row.owner_id,
        status=row.status,
        current_stage=row.current_stage_id,
        current_stage_name=current.name if current else None,
        current_stage_index=row.current_stage_index,
        total_stages=row.total_stages,
        completed_stages=row.completed_stages,
        progress=row.progress,
        metadata=read_metadata(row),
        stages=stages,
        is_blocked=data.is_blocked,
        stuck_reason=data.stuck_reason,
        failure_reason=row.failure_reason,
        started_at=row.started_at,
        last_updated_at=row.last_updated_at,
        completed_at=row.completed_at,
    )


def build_stage_context(row: DeploymentSession, data: Optional[StageData] = None) -> StageContext:
    """Assemble what the completion service sees of the active stage."""
    data = data or read_stage_data(row)
    stage = get_stage(row.current_stage_id)
    return StageContext(
        deployment_id=row.deployment_id,
        stage_id=stage.id,
        stage_name=stage.name,
        stage_description=stage.description,
        verification=stage.verification,
        instructions=data.instructions,
        project_context=read_project_context(row),
        executed_commands=[
            {
                "command": result.command,
                "exit_code": result.exit_code,
                "success": result.success,
                "is_fix_command": result.is_fix_command,
                "is_retry_command": result.is_retry_command,
            }
            for result in data.execution_results
        ],
        terminal_log=data.terminal_log,
    )
