"""Command pipeline: versioned command records, commands and the runner.

A command is an ordered list of ``(step_name, step_fn, description)`` tuples,
optionally wrapped in a scoped remote session. Steps are fail-fast. The
runner executes commands strictly in order and stops at the first command
that does not end in Success.

Step functions have the signature ``step(data, job, scope) -> StepResult``.
``scope`` holds the outputs threaded forward from earlier commands plus the
command's own working values; keys starting with ``_`` (the session, the
cluster client) stay private to the command and are never published.
"""

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, ContextManager, Mapping, Optional

from common import CommandState, StepResult
from context import DeploymentCommandData, JobContext
from errors import DeployError, InvalidTransition
from reporting import DeploymentReport

logger = logging.getLogger(__name__)

Step = tuple[str, Callable[[DeploymentCommandData, JobContext, dict], StepResult], str]
SessionFactory = Callable[[DeploymentCommandData, JobContext], ContextManager[Any]]

SESSION_KEY = '_session'

_TRANSITIONS = MappingProxyType({
    CommandState.UNKNOWN: frozenset({CommandState.RUNNING, CommandState.CANCELLED}),
    CommandState.RUNNING: frozenset({CommandState.SUCCESS, CommandState.HAS_ERROR, CommandState.CANCELLED}),
})


def _public(values: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if not k.startswith('_')}


@dataclass(frozen=True)
class CommandRecord:
    """Immutable snapshot of a command's state.

    Every change returns a new record with ``version + 1``; versions are
    monotonic across the whole run because each command's first record
    continues from the previous command's last one.
    """
    command: str
    state: CommandState = CommandState.UNKNOWN
    message: str = ''
    version: int = 0
    outputs: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    error: Optional[Exception] = None

    def transition(self, state: CommandState, message: Optional[str] = None,
                   error: Optional[Exception] = None) -> 'CommandRecord':
        """Move to state.

        Raises:
            InvalidTransition: When the state machine does not allow the move
        """
        if state not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransition(self.command, self.state.value, state.value)
        return replace(
            self,
            state=state,
            message=self.message if message is None else message,
            version=self.version + 1,
            error=error if error is not None else self.error,
        )

    def with_outputs(self, updates: Mapping[str, Any]) -> 'CommandRecord':
        """Add outputs while Running."""
        if self.state is not CommandState.RUNNING:
            raise InvalidTransition(self.command, self.state.value, 'output update')
        merged = dict(self.outputs)
        merged.update(_public(updates))
        return replace(self, outputs=MappingProxyType(merged), version=self.version + 1)

    def successor(self, command: str) -> 'CommandRecord':
        """Initial record of the next command, inheriting outputs."""
        return CommandRecord(command=command, version=self.version + 1, outputs=self.outputs)


@dataclass
class Command:
    """A named, fail-fast sequence of steps."""
    name: str
    description: str
    steps: list[Step]
    session: Optional[SessionFactory] = None

    def execute(
        self,
        data: DeploymentCommandData,
        job: JobContext,
        record: CommandRecord,
        history: Optional[list[CommandRecord]] = None,
    ) -> CommandRecord:
        """Run every step and return the terminal record.

        Exceptions raised by steps (or by opening the session) end the
        command in HasError; KeyboardInterrupt ends it in Cancelled and is
        not re-raised.
        """
        history = history if history is not None else []

        def advance(new: CommandRecord) -> CommandRecord:
            history.append(new)
            return new

        record = advance(record.transition(CommandState.RUNNING, f"{self.description}..."))
        scope: dict[str, Any] = dict(record.outputs)

        try:
            with ExitStack() as stack:
                if self.session is not None:
                    scope[SESSION_KEY] = stack.enter_context(self.session(data, job))

                for step_name, step_fn, description in self.steps:
                    logger.info(f"[{self.name}] {step_name}: {description}")
                    start = time.time()
                    result = step_fn(data, job, scope)
                    duration = result.duration or time.time() - start
                    if not result.success:
                        logger.error(f"[{self.name}] {step_name} failed: {result.message}")
                        return advance(record.transition(
                            CommandState.HAS_ERROR, result.message, result.error))
                    logger.info(f"[{self.name}] {step_name} done in {duration:.1f}s"
                                + (f": {result.message}" if result.message else ''))
                    scope.update(result.context_updates or {})
                    if _public(result.context_updates or {}):
                        record = advance(record.with_outputs(result.context_updates))

        except KeyboardInterrupt as e:
            logger.warning(f"[{self.name}] cancelled")
            return advance(record.transition(CommandState.CANCELLED, f"{self.name} cancelled", e))
        except DeployError as e:
            logger.error(f"[{self.name}] {e}")
            return advance(record.transition(CommandState.HAS_ERROR, str(e), e))
        except Exception as e:
            logger.exception(f"[{self.name}] raised exception")
            return advance(record.transition(CommandState.HAS_ERROR, f"{type(e).__name__}: {e}", e))

        return advance(record.transition(CommandState.SUCCESS, f"{self.name} completed"))


@dataclass
class PipelineResult:
    """Outcome of one pipeline run."""
    success: bool
    message: str = ''
    failed_command: Optional[str] = None
    records: list[CommandRecord] = field(default_factory=list)
    outputs: Mapping[str, Any] = field(default_factory=dict)

    @property
    def cancelled(self) -> bool:
        return any(r.state is CommandState.CANCELLED for r in self.records)


class PipelineRunner:
    """Runs a command list strictly in order."""

    def __init__(self, report_dir: Optional[Path] = None):
        self.report_dir = report_dir
        self.report: Optional[DeploymentReport] = None
        self.history: list[CommandRecord] = []

    def preview(self, data: DeploymentCommandData, commands: list[Command]) -> bool:
        """Show what would be executed without running. Returns True."""
        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {data.kind.value} deployment")
        print(f"  Master: {data.admin_username}@{data.master_endpoint}:{data.port}")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("Commands to execute:")
        step_count = 0
        for command in commands:
            session = ' (remote session)' if command.session else ''
            print(f"  [ OK ] {command.name}: {command.description}{session}")
            for step_name, _, description in command.steps:
                print(f"         - {step_name}: {description}")
                step_count += 1
            print("")

        print(f"  Manifests: {data.config_file_paths}")
        print(f"  Substitution: {'enabled' if data.enable_config_substitution else 'disabled'}")
        print(f"  Registries: {len(data.registry_endpoints)} declared")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {len(commands)} commands, {step_count} steps")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Remove --dry-run to execute the deployment.")
        print("")

        return True

    def run(self, job: JobContext, data: DeploymentCommandData, commands: list[Command]) -> PipelineResult:
        """Run all commands; halt at the first that does not succeed."""
        logger.info(f"Starting {data.kind.value} deployment to {data.master_endpoint} (run {job.run_id})")
        self.report = DeploymentReport(run_id=job.run_id, kind=data.kind.value, report_dir=self.report_dir)
        self.report.start()
        self.history = []

        start_time = time.time()
        records: list[CommandRecord] = []
        previous: Optional[CommandRecord] = None
        failed: Optional[CommandRecord] = None

        for index, command in enumerate(commands):
            if failed is not None:
                logger.info(f"Skipping command: {command.name}")
                self.report.skip_phase(command.name, command.description)
                continue

            initial = previous.successor(command.name) if previous else CommandRecord(command=command.name)
            self.history.append(initial)
            logger.info(f"Running command {index + 1}/{len(commands)}: {command.name} - {command.description}")
            self.report.start_phase(command.name, command.description)

            record = command.execute(data, job, initial, self.history)
            job.record_result(record)
            records.append(record)
            previous = record

            if record.state is CommandState.SUCCESS:
                logger.info(f"Command {command.name} passed")
                self.report.pass_phase(command.name, record.message)
            else:
                logger.error(f"Command {command.name} ended {record.state.value}: {record.message}")
                self.report.fail_phase(command.name, record.message, status=record.state.value)
                failed = record

        total_time = time.time() - start_time
        success = failed is None
        logger.info(f"Deployment {'completed' if success else 'failed'} in {total_time:.1f}s")
        self.report.finish(success)

        return PipelineResult(
            success=success,
            message=failed.message if failed else 'Deployment completed',
            failed_command=failed.command if failed else None,
            records=records,
            outputs=dict(previous.outputs) if previous else {},
        )
