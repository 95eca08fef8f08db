"""
Command Queue Runner
====================

Executes the active stage's command queue strictly in order, one item at a
time:

1. Claim the item at the cursor and persist it as ``running``
2. Dispatch to the Tool Dispatcher (recognized terraform verbs with a live
   backend) or to the Command Executor
3. Exit 0: mark ``succeeded`` and advance the cursor
4. Anything else: mark ``failed``, block the stage and stop

Pause and cancel are honoured between items. A command already in flight
when the session is cancelled is recorded but does not advance anything.

An outcome that cannot be saved is kept by the runner and saved again at
the start of the next run, before anything new is claimed.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from pydantic import TypeAdapter, ValidationError

from src.core.config import Settings, settings as default_settings
from src.core.exceptions import (
    CommandFailure,
    DispatchFailure,
    InvalidTransition,
    PersistenceFailure,
    QueueBlocked,
    ValidationFailure,
)
from src.core.models import (
    TERMINAL_ITEM_STATES,
    TERMINAL_SESSION_STATES,
    DeploymentSession,
    LogStream,
    QueueItemStatus,
    SessionStatus,
)
from src.core.schemas import (
    BlockingError,
    GeneratedCommand,
    QueueItem,
    QueueStatus,
    RunQueueResult,
    StageData,
)
from src.core.tools.dispatcher import ToolDispatcher
from src.core.wizard.classifier import classify_command, resolve_tool_route
from src.core.wizard.document import read_stage_data, write_stage_data
from src.core.wizard.executor import CommandExecutor
from src.core.wizard.limits import truncate_text
from src.core.wizard.state_machine import (
    StageStateMachine,
    add_command_log,
    append_terminal_log,
    execution_result_from,
)

logger = structlog.get_logger()

_commands_adapter = TypeAdapter(list[GeneratedCommand])


@dataclass
class CommandOutcome:
    """Normalized result of one dispatched command."""
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    via_tool: Optional[str] = None
    fallback: bool = False

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Pure queue helpers
# ==========================================================================

def build_queue_status(data: StageData) -> QueueStatus:
    queue = data.command_queue
    counts = {status: 0 for status in QueueItemStatus}
    for item in queue:
        counts[item.status] += 1
    return QueueStatus(
        total=len(queue),
        pending=counts[QueueItemStatus.PENDING],
        running=counts[QueueItemStatus.RUNNING],
        completed=counts[QueueItemStatus.SUCCEEDED],
        failed=counts[QueueItemStatus.FAILED],
        skipped=counts[QueueItemStatus.SKIPPED],
        current_index=data.current_command_index,
        is_blocked=data.is_blocked,
        blocking_error=data.blocking_error,
        next_command=next_command(data),
    )


def next_command(data: StageData) -> Optional[QueueItem]:
    if data.is_blocked or data.current_command_index >= len(data.command_queue):
        return None
    item = data.command_queue[data.current_command_index]
    return item if item.status == QueueItemStatus.PENDING else None


def queue_drained(data: StageData) -> bool:
    """Cursor at the end, nothing blocked or left pending."""
    return (
        not data.is_blocked
        and data.current_command_index >= len(data.command_queue)
        and all(item.status in TERMINAL_ITEM_STATES for item in data.command_queue)
    )


def make_queue_items(
    commands: list[GeneratedCommand],
    start_order: int,
    is_fix: bool = False,
    is_retry: bool = False,
) -> list[QueueItem]:
    return [
        QueueItem(
            command=cmd.command,
            kind=cmd.kind or classify_command(cmd.command),
            reason=cmd.reason,
            expected_result=cmd.expected_result,
            order=start_order + offset,
            is_fix_command=is_fix,
            is_retry_command=is_retry,
        )
        for offset, cmd in enumerate(commands)
    ]


def splice_recovery_commands(
    data: StageData,
    fix_commands: list[GeneratedCommand],
    retry_commands: list[GeneratedCommand],
) -> int:
    """
    Insert fix then retry items right after the blocking item and unblock.

    ``order`` is renumbered to the queue position and the cursor moves to
    the first injected item. Returns how many items were injected.
    """
    if not data.is_blocked or data.blocking_error is None:
        raise InvalidTransition("Stage is not blocked; nothing to recover")

    position = data.blocking_error.queue_index + 1
    injected = make_queue_items(fix_commands, 0, is_fix=True)
    injected += make_queue_items(retry_commands, 0, is_retry=True)

    queue = list(data.command_queue)
    queue[position:position] = injected
    for order, item in enumerate(queue):
        item.order = order

    data.command_queue = queue
    data.current_command_index = position
    data.is_blocked = False
    data.blocking_error = None
    return len(injected)


def blocking_error_from(
    failure: CommandFailure,
    error_output: str,
    fix_attempts: int,
    queue_index: int,
) -> BlockingError:
    """Record a command failure as the stage's blocking error."""
    return BlockingError(
        command=failure.command,
        exit_code=failure.exit_code,
        error_output=error_output,
        analysis=None,
        fix_attempts=fix_attempts,
        queue_index=queue_index,
    )


def _tool_exit_code(result: Any) -> int:
    if isinstance(result, dict):
        if result.get("success") is False or result.get("isError") is True:
            return 1
        code = result.get("exit_code")
        if isinstance(code, int):
            return code
    return 0


def _tool_output(result: Any) -> str:
    if isinstance(result, dict) and isinstance(result.get("output"), str):
        return result["output"]
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str, indent=2)


# ==========================================================================
# Runner
# ==========================================================================

class CommandQueueRunner:
    """
    Sequential executor of a stage's command queue.

    One runner instance serves all sessions; a per-session lock keeps two
    runs of the same session from interleaving inside this process.
    """

    def __init__(
        self,
        state_machine: StageStateMachine,
        executor: CommandExecutor,
        dispatcher: Optional[ToolDispatcher] = None,
        config: Optional[Settings] = None,
    ):
        self.state_machine = state_machine
        self.store = state_machine.store
        self.executor = executor
        self.dispatcher = dispatcher
        self.config = config or default_settings
        self._locks: dict[str, asyncio.Lock] = {}
        # Outcomes whose write failed, keyed by deployment id
        self._unsaved: dict[str, tuple[int, QueueItem, CommandOutcome]] = {}

    def _lock_for(self, deployment_id: str) -> asyncio.Lock:
        lock = self._locks.get(deployment_id)
        if lock is None:
            lock = self._locks[deployment_id] = asyncio.Lock()
        return lock

    def is_running(self, deployment_id: str) -> bool:
        lock = self._locks.get(deployment_id)
        return lock is not None and lock.locked()

    # ----------------------------------------------------------------------
    # Queue editing
    # ----------------------------------------------------------------------

    async def enqueue_commands(
        self,
        deployment_id: str,
        commands: list[Union[GeneratedCommand, dict[str, Any]]],
    ) -> list[QueueItem]:
        """
        Append commands to the active stage's queue.

        Raises:
            ValidationFailure: malformed or empty command list
            QueueBlocked: the stage is blocked on a failed command
        """
        try:
            validated = _commands_adapter.validate_python(
                [c.model_dump() if isinstance(c, GeneratedCommand) else c for c in commands]
            )
        except ValidationError as e:
            raise ValidationFailure("Invalid command list", {"errors": e.errors(include_url=False)}) from e
        if not validated:
            raise ValidationFailure("Command list is empty")

        def enqueue(row: DeploymentSession) -> list[QueueItem]:
            if row.status in TERMINAL_SESSION_STATES:
                raise InvalidTransition(
                    f"Cannot enqueue commands on a {row.status.value} session",
                    current_status=row.status.value,
                )
            data = read_stage_data(row)
            if data.is_blocked:
                raise QueueBlocked(
                    "Stage is blocked; resolve or skip the failed command first",
                    blocking_command=data.blocking_error.command if data.blocking_error else None,
                )
            start = data.command_queue[-1].order + 1 if data.command_queue else 0
            items = make_queue_items(validated, start)
            data.command_queue = [*data.command_queue, *items]
            write_stage_data(row, data)
            return items

        items = await self.store.mutate(deployment_id, enqueue)
        logger.info("commands_enqueued", deployment_id=deployment_id, count=len(items))
        return items

    async def skip_blocked_command(self, deployment_id: str) -> QueueStatus:
        """Clear the block and move past the failed item, which stays failed."""
        def skip(row: DeploymentSession) -> QueueStatus:
            data = read_stage_data(row)
            if not data.is_blocked or data.blocking_error is None:
                raise InvalidTransition("Stage is not blocked; nothing to skip")
            blocked = data.blocking_error
            data.current_command_index = max(data.current_command_index, blocked.queue_index + 1)
            data.is_blocked = False
            data.blocking_error = None
            add_command_log(data, f"Skipped failed command: {blocked.command}", LogStream.INFO, self.config, blocked.command)
            write_stage_data(row, data)
            return build_queue_status(data)

        status = await self.store.mutate(deployment_id, skip)
        logger.warning("blocked_command_skipped", deployment_id=deployment_id)
        return status

    # ----------------------------------------------------------------------
    # Read models
    # ----------------------------------------------------------------------

    async def get_queue_status(self, deployment_id: str) -> QueueStatus:
        return build_queue_status(await self.state_machine.get_stage_data(deployment_id))

    async def get_next_command(self, deployment_id: str) -> Optional[QueueItem]:
        return next_command(await self.state_machine.get_stage_data(deployment_id))

    # ----------------------------------------------------------------------
    # Execution
    # ----------------------------------------------------------------------

    async def run_queue(
        self,
        deployment_id: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
    ) -> RunQueueResult:
        """
        Run pending items until the queue drains, blocks or the session stops.

        A ``PersistenceFailure`` after a command ran does not raise: the run
        stops with ``stopped_reason="persistence_failure"``, the outcome is
        returned in ``last_*`` and ``state_stale`` is set.
        """
        async with self._lock_for(deployment_id):
            executed = 0
            stopped_reason: Optional[str] = None
            last: Optional[tuple[QueueItem, CommandOutcome]] = None

            unsaved = self._unsaved.get(deployment_id)
            if unsaved is not None:
                index, item, outcome = unsaved
                last = (item, outcome)
                stopped_reason = await self._record(deployment_id, index, item, outcome)

            while stopped_reason is None:
                try:
                    claim = await self.store.mutate(deployment_id, self._claim_next)
                except PersistenceFailure as e:
                    if last is None:
                        raise
                    logger.warning("queue_claim_failed", deployment_id=deployment_id, error=e.message)
                    stopped_reason = "persistence_failure"
                    break
                if isinstance(claim, str):
                    stopped_reason = claim
                    break
                index, item = claim

                outcome = await self._dispatch(deployment_id, item, cwd, env, timeout_ms)
                executed += 1
                last = (item, outcome)
                stopped_reason = await self._record(deployment_id, index, item, outcome)

            try:
                data: Optional[StageData] = await self.state_machine.get_stage_data(deployment_id)
            except PersistenceFailure as e:
                logger.warning("queue_state_unavailable", deployment_id=deployment_id, error=e.message)
                data = None

            result = RunQueueResult(
                executed=executed,
                blocked=data.is_blocked if data is not None else False,
                drained=queue_drained(data) if data is not None else False,
                stopped_reason=stopped_reason,
                queue=build_queue_status(data) if data is not None else None,
                state_stale=data is None or deployment_id in self._unsaved,
            )
            if last is not None:
                item, outcome = last
                result.last_command = item.command
                result.last_exit_code = outcome.exit_code
                result.last_output = truncate_text(
                    outcome.output, self.config.COMMAND_OUTPUT_MAX_BYTES
                ).text
            logger.info(
                "queue_run_finished",
                deployment_id=deployment_id,
                executed=executed,
                blocked=result.blocked,
                drained=result.drained,
                reason=stopped_reason,
                stale=result.state_stale,
            )
            return result

    async def _record(
        self,
        deployment_id: str,
        index: int,
        item: QueueItem,
        outcome: CommandOutcome,
    ) -> Optional[str]:
        """Save an outcome; on failure keep it for the next run."""
        try:
            stop = await self.store.mutate(
                deployment_id,
                lambda row: self._finish(row, index, item, outcome),
            )
        except PersistenceFailure as e:
            self._unsaved[deployment_id] = (index, item, outcome)
            logger.warning(
                "command_result_not_persisted",
                deployment_id=deployment_id,
                command=item.command,
                exit_code=outcome.exit_code,
                error=e.message,
            )
            return "persistence_failure"
        self._unsaved.pop(deployment_id, None)
        return stop

    def _claim_next(self, row: DeploymentSession) -> Union[str, tuple[int, QueueItem]]:
        """Mark the item at the cursor running, or say why nothing can run."""
        if row.status != SessionStatus.ACTIVE:
            return row.status.value
        data = read_stage_data(row)
        if data.is_blocked:
            return "blocked"

        # Terminal items left at the cursor are stepped over
        index = data.current_command_index
        while index < len(data.command_queue) and data.command_queue[index].status in TERMINAL_ITEM_STATES:
            index += 1
        if index >= len(data.command_queue):
            if index != data.current_command_index:
                data.current_command_index = index
                write_stage_data(row, data)
            return "drained"

        item = data.command_queue[index]
        if item.status == QueueItemStatus.RUNNING:
            # Another process owns this item
            return "running"

        data.current_command_index = index
        item.status = QueueItemStatus.RUNNING
        item.started_at = _now()
        add_command_log(data, f"$ {item.command}", LogStream.INFO, self.config, item.command)
        write_stage_data(row, data)
        return index, item.model_copy()

    async def _dispatch(
        self,
        deployment_id: str,
        item: QueueItem,
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        timeout_ms: Optional[int],
    ) -> CommandOutcome:
        route = resolve_tool_route(item.command) if self.dispatcher else None
        if route and self.dispatcher.can_execute_live(route.backend, route.operation):
            params = dict(route.params)
            if cwd:
                params["cwd"] = cwd
            try:
                tool = await self.dispatcher.execute_tool(
                    route.backend, route.operation, params, deployment_id=deployment_id
                )
            except DispatchFailure as e:
                return CommandOutcome(
                    exit_code=1,
                    stdout="",
                    stderr=e.message,
                    duration_ms=0,
                    via_tool=f"{route.backend}.{route.operation}",
                )
            return CommandOutcome(
                exit_code=_tool_exit_code(tool.result),
                stdout=_tool_output(tool.result),
                stderr="",
                duration_ms=tool.latency_ms,
                via_tool=f"{route.backend}.{route.operation}",
                fallback=tool.fallback,
            )

        result = await self.executor.execute(item.command, cwd=cwd, env=env, timeout_ms=timeout_ms)
        return CommandOutcome(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )

    def _finish(
        self,
        row: DeploymentSession,
        index: int,
        claimed: QueueItem,
        outcome: CommandOutcome,
    ) -> Optional[str]:
        """Record the outcome. Returns a stop reason, or None to continue."""
        data = read_stage_data(row)
        if index >= len(data.command_queue) or data.command_queue[index].command != claimed.command:
            logger.warning("claimed_item_moved", deployment_id=row.deployment_id, index=index)
            return "queue_changed"

        item = data.command_queue[index]
        if item.status != QueueItemStatus.RUNNING:
            # Demoted by crash recovery while in flight; terminal items are not rewritten
            logger.warning("claimed_item_no_longer_running", deployment_id=row.deployment_id, command=item.command)
            return "queue_changed"

        output = truncate_text(outcome.output, self.config.COMMAND_OUTPUT_MAX_BYTES)
        item.exit_code = outcome.exit_code
        item.output = output.text
        item.output_truncated = output.truncated
        item.duration_ms = outcome.duration_ms
        item.via_tool = outcome.via_tool
        item.fallback = outcome.fallback
        item.completed_at = _now()
        success = outcome.exit_code == 0
        item.status = QueueItemStatus.SUCCEEDED if success else QueueItemStatus.FAILED

        data.execution_results = [*data.execution_results, execution_result_from(item)]
        if outcome.output:
            append_terminal_log(data, outcome.output.rstrip("\n") + "\n", self.config.TERMINAL_LOG_MAX_BYTES)
        if outcome.stdout:
            add_command_log(data, outcome.stdout, LogStream.STDOUT, self.config, item.command, mirror=False)
        if outcome.stderr:
            add_command_log(data, outcome.stderr, LogStream.STDERR, self.config, item.command, mirror=False)

        if row.status in TERMINAL_SESSION_STATES:
            write_stage_data(row, data)
            return row.status.value

        if success:
            data.current_command_index = index + 1
            write_stage_data(row, data)
            logger.info("command_succeeded", deployment_id=row.deployment_id, command=item.command)
            return None

        failure = CommandFailure(
            f"Command failed with exit code {outcome.exit_code}: {item.command}",
            command=item.command,
            exit_code=outcome.exit_code,
        )
        data.is_blocked = True
        data.blocking_error = blocking_error_from(
            failure,
            truncate_text(outcome.output, self.config.LOG_LINE_MAX_BYTES).text,
            data.fix_attempts.get(item.command, 0),
            index,
        )
        data.current_command_index = index
        add_command_log(data, failure.message, LogStream.ERROR, self.config, item.command)
        write_stage_data(row, data)
        logger.warning(
            "command_failed",
            deployment_id=row.deployment_id,
            command=item.command,
            exit_code=outcome.exit_code,
        )
        return "blocked"
