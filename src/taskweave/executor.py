"""Playbook execution orchestration for taskweave.

The executor runs the plays of a playbook in order. Within a play, hosts are
split into serial batches; inside a batch, up to ``forks`` hosts run
concurrently, each working through the play's task list strictly in order:

1. Open (or reuse) the host's connection; failure marks every remaining
   task unreachable.
2. Expand each task into instances against the host's scope stack.
3. Invoke the module runner for each instance, with retries and a timeout.
4. Record results, register facts, notify handlers on change.
5. Flush handlers at ``meta: flush_handlers`` and at the end of the list.

A failure is isolated to its host: the host stops, the other hosts go on.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

from .config import RunConfig
from .connection import Connection, ConnectionProvider, DefaultConnectionProvider
from .exceptions import ConnectionError, HostUnreachableError, TaskweaveError
from .graph import TaskGraphBuilder, TaskInstance
from .handlers import HandlerDispatcher
from .host_filter import filter_hosts, get_group_hosts_mapping
from .inventory import Inventory
from .logging import StructuredLogger, get_logger, log_performance
from .playbook import FLUSH_HANDLERS, FREE_FORM_KEY, Play, Playbook, Task
from .progress import NullProgressReporter, ProgressReporter
from .results import ResultAggregator
from .retry import RetryConfig, retry_task
from .runners import CommandModuleRunner, ModuleRunner
from .secrets import SecretsProvider, create_secrets_provider
from .types import HostConfig, ModuleResult, TaskResult, TaskStatus
from .variables import FactStore, MergePolicy, Precedence, ScopeStack, build_host_stack

logger = logging.getLogger(__name__)

INTERNAL_ACTIONS = frozenset({"set_fact", "debug", "fail", "meta"})
CANCELLED_MSG = "Run cancelled"
UNREACHABLE_MSG = "Host unreachable"


class HostState(str, Enum):
    """Where a host stands after running (part of) a play."""

    OK = "ok"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


def _batches(items: Sequence[Any], size: int) -> list[list[Any]]:
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def registered_value(result: TaskResult) -> dict[str, Any]:
    """The value a task result is registered under (``register:``)."""
    value = dict(result.output)
    value.update({
        "status": result.status.value,
        "changed": result.changed,
        "failed": result.failed,
        "skipped": result.status == TaskStatus.SKIPPED,
        "msg": result.msg,
    })
    if result.attempts > 1:
        value["attempts"] = result.attempts
    if result.loop_item is not None:
        value["item"] = result.loop_item
    return value


def registered_loop_value(results: list[TaskResult]) -> dict[str, Any]:
    """Registered value of a looped task: one entry per item."""
    return {
        "results": [registered_value(r) for r in results],
        "changed": any(r.changed for r in results),
        "failed": any(r.failed and not r.ignored for r in results),
        "skipped": all(r.status == TaskStatus.SKIPPED for r in results),
        "msg": "All items completed",
    }


@dataclass
class _HostRun:
    """Everything one host worker needs while running one play."""

    play: Play
    host: HostConfig
    stack: ScopeStack
    dispatcher: HandlerDispatcher
    record: Callable[[TaskResult, str], None]
    log: StructuredLogger
    connection: Connection | None = None


class PlaybookExecutor:
    """Runs playbooks against an inventory.

    Attributes:
        config: Immutable run configuration
        runner: Module runner invoked for every task instance
        connections: Provider opening one connection per host per run
        secrets: Secrets provider for ``!secret`` values and credentials
        reporter: Progress reporter receiving run events

    Example:
        >>> executor = PlaybookExecutor(RunConfig(forks=10))
        >>> results = await executor.run(load_playbook("site.yml"), load_inventory("hosts.yml"))
        >>> results.exit_code()
        0
    """

    def __init__(
        self,
        config: RunConfig | None = None,
        runner: ModuleRunner | None = None,
        connections: ConnectionProvider | None = None,
        secrets: SecretsProvider | None = None,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.config = config or RunConfig()
        self.secrets = secrets or create_secrets_provider(self.config.secrets_provider)
        self.runner = runner or CommandModuleRunner()
        self.connections = connections or DefaultConnectionProvider(
            self.secrets,
            connect_timeout=self.config.connect_timeout,
            known_hosts=self.config.known_hosts,
        )
        self.reporter = reporter or NullProgressReporter()
        self.builder = TaskGraphBuilder(self.config)
        self._cancel_event = asyncio.Event()
        self._open: dict[str, Connection] = {}
        self._connect_errors: dict[str, ConnectionError] = {}
        self._facts: dict[str, FactStore] = {}

    def cancel(self) -> None:
        """Request cancellation: in-flight invocations finish, nothing new starts."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def base_stack(self, playbook: Playbook) -> ScopeStack:
        """Run-wide scope stack: defaults and extra vars."""
        stack = ScopeStack(
            merge_policy=MergePolicy(self.config.merge_policy),
            secrets=self.secrets,
        )
        playbook_dir = str(Path(playbook.source).resolve().parent) if playbook.source else os.getcwd()
        stack.push("defaults", Precedence.DEFAULTS, {"playbook_dir": playbook_dir})
        if self.config.extra_vars:
            stack.push("extra_vars", Precedence.EXTRA, self.config.extra_vars)
        return stack

    def select_play_hosts(
        self,
        playbook: Playbook,
        inventory: Inventory,
        limit: str | None = None,
    ) -> list[list[HostConfig]]:
        """Resolve every play's host selector before anything runs.

        Raises:
            UnknownGroupError: If a selector or the limit names an unknown group
        """
        allowed = None
        if limit:
            allowed = filter_hosts(inventory.get_all_hosts(), limit, get_group_hosts_mapping(inventory))
        selections = []
        for play in playbook.plays:
            hosts = inventory.select(play.hosts)
            if allowed is not None:
                hosts = [h for h in hosts if h.name in allowed]
            selections.append(hosts)
        return selections

    async def run(
        self,
        playbook: Playbook,
        inventory: Inventory,
        limit: str | None = None,
    ) -> ResultAggregator:
        """Run every play of a playbook.

        Hosts that end a play failed or unreachable take no part in later
        plays. Facts set on a host (``set_fact``, ``register``) stay visible
        to that host in later plays.

        Args:
            playbook: Loaded playbook
            inventory: Loaded inventory
            limit: Optional ``--limit`` pattern restricting the hosts

        Returns:
            Aggregated results of the run

        Raises:
            UnknownGroupError: If a play targets an unknown group (before execution)
        """
        selections = self.select_play_hosts(playbook, inventory, limit)
        results = ResultAggregator()
        base = self.base_stack(playbook)
        excluded: set[str] = set()
        self._facts = {}
        start = time.perf_counter()

        self.reporter.on_run_start(playbook.source or "<playbook>", len(playbook.plays))
        try:
            with log_performance(logger, "Playbook run", plays=len(playbook.plays)):
                for play_index, (play, hosts) in enumerate(zip(playbook.plays, selections)):
                    hosts = [h for h in hosts if h.name not in excluded]
                    play_results = await self.run_play(play, hosts, inventory, base, results, play_index)
                    for host_name, host_results in play_results.items():
                        if any(r.failed and not r.ignored for r in host_results):
                            excluded.add(host_name)
        finally:
            await self.close()

        results.duration = time.perf_counter() - start
        self.reporter.on_run_complete(
            {host: stats.to_dict() for host, stats in results.host_stats().items()},
            results.duration,
        )
        return results

    async def run_play(
        self,
        play: Play,
        hosts: list[HostConfig],
        inventory: Inventory,
        scope: ScopeStack,
        results: ResultAggregator,
        play_index: int = 0,
    ) -> dict[str, list[TaskResult]]:
        """Run one play on the given hosts.

        Args:
            play: Play to run
            hosts: Target hosts, in inventory order
            inventory: Inventory the hosts belong to (for group variables)
            scope: Run-wide scope stack
            results: Aggregator receiving every result
            play_index: Position of the play in its playbook

        Returns:
            Results of this play per host, in execution order
        """
        log = get_logger(__name__, play=play.name)
        self.reporter.on_play_start(play.name, [h.name for h in hosts])
        if not hosts:
            log.warning("No hosts matched, skipping play")
            return {}

        play_stack = scope.child(f"play:{play.name}", Precedence.PLAY, play.vars)
        dispatcher = HandlerDispatcher(play.handlers)
        semaphore = asyncio.Semaphore(self.config.forks)
        play_results: dict[str, list[TaskResult]] = {}
        for host in hosts:
            results.add_host(host.name)
            play_results[host.name] = []

        def record(result: TaskResult, key: str) -> None:
            play_results[result.host].append(result)
            results.add(result, key=f"{play_index}:{key}", required=play.required)
            self.reporter.on_task_result(result)

        batch_size = play.batch_size(len(hosts))
        with log_performance(logger, f"Play '{play.name}'", hosts=len(hosts)):
            for batch in _batches(hosts, batch_size):
                log.debug(f"Starting batch of {len(batch)} host(s)")
                await asyncio.gather(*(
                    self._run_host(
                        _HostRun(
                            play=play,
                            host=host,
                            stack=build_host_stack(
                                play_stack, inventory, host, self._facts.setdefault(host.name, FactStore())
                            ),
                            dispatcher=dispatcher,
                            record=record,
                            log=log.bind(host=host.name),
                        ),
                        semaphore,
                    )
                    for host in batch
                ))
        return play_results

    async def _run_host(self, run: _HostRun, semaphore: asyncio.Semaphore) -> HostState:
        async with semaphore:
            if self.cancelled:
                self._mark_remaining(run, 0, TaskStatus.CANCELLED, CANCELLED_MSG)
                return HostState.CANCELLED
            try:
                run.connection = await self._connect(run.host)
            except ConnectionError as e:
                run.log.warning(f"Connection failed: {e.message}")
                self._mark_remaining(run, 0, TaskStatus.UNREACHABLE, e.message)
                return HostState.UNREACHABLE

            state = await self._run_tasks(run)
            run.log.debug(f"Host finished play: {state.value}")
            return state

    async def _run_tasks(self, run: _HostRun) -> HostState:
        for position, task in enumerate(run.play.tasks):
            if self.cancelled:
                self._mark_remaining(run, position, TaskStatus.CANCELLED, CANCELLED_MSG)
                return HostState.CANCELLED

            if task.is_flush:
                state = await self._flush_handlers(run)
            else:
                state = await self._run_task(run, task, str(position))

            if state is HostState.UNREACHABLE:
                self._mark_remaining(run, position + 1, TaskStatus.UNREACHABLE, UNREACHABLE_MSG)
            elif state is HostState.CANCELLED:
                self._mark_remaining(run, position + 1, TaskStatus.CANCELLED, CANCELLED_MSG)
            elif state is HostState.FAILED:
                run.dispatcher.discard(run.host.name)
            if state is not HostState.OK:
                return state

        return await self._flush_handlers(run)

    async def _flush_handlers(self, run: _HostRun) -> HostState:
        """Run the host's pending handlers, in definition order."""
        while (handler := run.dispatcher.next_handler(run.host.name)) is not None:
            ident = f"handler:{handler.name}"
            if self.cancelled:
                run.record(self._cancelled_result(run, handler.name, is_handler=True), ident)
                for name in run.dispatcher.discard(run.host.name):
                    run.record(self._cancelled_result(run, name, is_handler=True), f"handler:{name}")
                return HostState.CANCELLED

            run.log.debug(f"Running handler '{handler.name}'")
            state = await self._run_task(run, handler, ident, is_handler=True)
            if state is not HostState.OK:
                run.dispatcher.discard(run.host.name)
                return state
        return HostState.OK

    async def _run_task(
        self,
        run: _HostRun,
        task: Task,
        ident: str,
        is_handler: bool = False,
    ) -> HostState:
        instances = self.builder.expand(task, run.stack, ident)
        task_results: list[TaskResult] = []
        state = HostState.OK

        for instance in instances:
            if self.cancelled:
                run.record(self._cancelled_result(run, instance.label, is_handler), instance.ident)
                state = HostState.CANCELLED
                continue

            result = await self._run_instance(run, instance, is_handler)
            run.record(result, instance.ident)
            task_results.append(result)

            if result.status == TaskStatus.UNREACHABLE:
                state = HostState.UNREACHABLE
                break
            if result.status == TaskStatus.FAILED and not result.ignored:
                state = HostState.FAILED

        if task.register and task_results:
            if task.has_loop and instances[0].loop_index is not None:
                run.stack.set_fact(task.register, registered_loop_value(task_results))
            else:
                run.stack.set_fact(task.register, registered_value(task_results[0]))

        if state is HostState.OK and task.notify and any(r.changed for r in task_results):
            for name in task.notify:
                if run.dispatcher.notify(run.host.name, name):
                    run.log.debug(f"Notified handler '{name}'", task=task.name)
        return state

    async def _run_instance(self, run: _HostRun, instance: TaskInstance, is_handler: bool) -> TaskResult:
        task = instance.task

        def make_result(status: TaskStatus, msg: str = "", output: dict[str, Any] | None = None, attempts: int = 0) -> TaskResult:
            return TaskResult(
                host=run.host.name,
                task=instance.label,
                status=status,
                msg=msg,
                output=output or {},
                play=run.play.name,
                attempts=attempts,
                loop_item=instance.loop_item,
                is_handler=is_handler,
                ignored=status == TaskStatus.FAILED and task.ignore_errors,
            )

        if instance.error is not None:
            run.log.warning(f"Task '{instance.label}' could not be evaluated: {instance.error}")
            return make_result(TaskStatus.FAILED, str(instance.error))
        if instance.skipped:
            return make_result(TaskStatus.SKIPPED, instance.skip_reason or "")

        try:
            if task.action in INTERNAL_ACTIONS:
                module_result = self._run_internal(run, instance)
                attempts = 1
            else:
                module_result, attempts = await self._invoke_with_retry(run, instance)
        except TaskweaveError as e:
            run.log.warning(f"Task '{instance.label}' failed: {e}")
            return make_result(TaskStatus.FAILED, str(e), attempts=1)
        except Exception as e:
            run.log.exception(f"Task '{instance.label}' raised")
            return make_result(TaskStatus.FAILED, f"Execution failed: {e}", attempts=1)

        if module_result.unreachable:
            status = TaskStatus.UNREACHABLE
        elif not module_result.success:
            status = TaskStatus.FAILED
        elif module_result.changed:
            status = TaskStatus.CHANGED
        else:
            status = TaskStatus.OK
        msg = module_result.error or str(module_result.output.get("msg", ""))
        return make_result(status, msg, module_result.output, attempts)

    async def _invoke_with_retry(self, run: _HostRun, instance: TaskInstance) -> tuple[ModuleResult, int]:
        task = instance.task
        scope = instance.scope or run.stack

        def accept(result: ModuleResult) -> bool:
            if task.until is None:
                return result.success
            provisional = TaskResult(
                host=run.host.name,
                task=instance.label,
                status=TaskStatus.OK if result.success else TaskStatus.FAILED,
                msg=result.error or "",
                output=result.output,
            )
            check = scope.child("until", Precedence.LOOP, {task.register or "result": registered_value(provisional)})
            return check.evaluate(task.until)

        def on_retry(attempt: int, error: str, delay: float) -> None:
            self.reporter.on_task_retry(run.host.name, instance.label, attempt, task.retries, error, delay)

        result, state = await retry_task(
            lambda: self._invoke(run, instance),
            RetryConfig.from_task(task),
            accept=accept,
            host_name=run.host.name,
            on_retry=on_retry,
        )
        if task.until is not None and not state.succeeded and not result.unreachable:
            result = ModuleResult(
                host_name=run.host.name,
                success=False,
                changed=result.changed,
                output=result.output,
                error=f"Condition not met after {state.attempts} attempt(s)",
            )
        return result, state.attempts

    async def _invoke(self, run: _HostRun, instance: TaskInstance) -> ModuleResult:
        """One module invocation under the task timeout."""
        task = instance.task
        timeout = task.timeout or self.config.timeout
        run.log.trace(f"Invoking {task.action}", task=instance.label)
        try:
            return await asyncio.wait_for(
                self.runner.invoke(task.action, instance.args, run.connection, timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return ModuleResult.error_result(run.host.name, f"Task timed out after {timeout}s")
        except HostUnreachableError as e:
            run.log.warning(f"Host became unreachable: {e.message}")
            await self._drop_connection(run.host.name)
            return ModuleResult.error_result(run.host.name, e.message, unreachable=True)
        except TaskweaveError as e:
            return ModuleResult.error_result(run.host.name, str(e))
        except Exception as e:
            run.log.exception(f"Module runner raised for {task.action}")
            return ModuleResult.error_result(run.host.name, f"Execution failed: {e}")

    def _run_internal(self, run: _HostRun, instance: TaskInstance) -> ModuleResult:
        """Actions handled by the engine itself rather than the module runner."""
        action = instance.task.action
        args = instance.args
        host_name = run.host.name
        scope = instance.scope or run.stack

        if action == "set_fact":
            for key, value in args.items():
                scope.set_fact(key, value)
            return ModuleResult.success_result(host_name, {"ansible_facts": dict(args)})
        if action == "debug":
            if "var" in args:
                name = str(args["var"])
                return ModuleResult.success_result(host_name, {name: scope.render("{{ " + name + " }}")})
            return ModuleResult.success_result(host_name, {"msg": args.get("msg", "Hello world!")})
        if action == "fail":
            return ModuleResult.error_result(host_name, str(args.get("msg", "Failed as requested from task")))

        meta = args.get(FREE_FORM_KEY)
        if meta == "noop":
            return ModuleResult.success_result(host_name, {})
        return ModuleResult.error_result(
            host_name, f"Unsupported meta action '{meta}' (supported: {FLUSH_HANDLERS}, noop)"
        )

    def _cancelled_result(self, run: _HostRun, label: str, is_handler: bool = False) -> TaskResult:
        return TaskResult(
            host=run.host.name,
            task=label,
            status=TaskStatus.CANCELLED,
            msg=CANCELLED_MSG,
            play=run.play.name,
            is_handler=is_handler,
        )

    def _mark_remaining(self, run: _HostRun, start: int, status: TaskStatus, msg: str) -> None:
        """Record a terminal status for every task from ``start`` on, without invoking them."""
        for position in range(start, len(run.play.tasks)):
            task = run.play.tasks[position]
            if task.is_flush:
                continue
            run.record(
                TaskResult(host=run.host.name, task=task.name, status=status, msg=msg, play=run.play.name),
                str(position),
            )

    async def _connect(self, host: HostConfig) -> Connection:
        """Connection for a host, opened at most once per run.

        Raises:
            ConnectionError: If the host cannot be reached (also on later calls)
        """
        if host.name in self._connect_errors:
            raise self._connect_errors[host.name]
        if host.name in self._open:
            return self._open[host.name]

        try:
            connection = await asyncio.wait_for(
                self.connections.connect(host), timeout=self.config.connect_timeout
            )
        except asyncio.TimeoutError:
            error = ConnectionError(host.name, f"timed out after {self.config.connect_timeout}s")
            self._connect_errors[host.name] = error
            raise error from None
        except ConnectionError as e:
            self._connect_errors[host.name] = e
            raise
        self._open[host.name] = connection
        return connection

    async def _drop_connection(self, host_name: str) -> None:
        connection = self._open.pop(host_name, None)
        self._connect_errors[host_name] = ConnectionError(host_name, UNREACHABLE_MSG)
        if connection is not None:
            try:
                await connection.close()
            except (OSError, TaskweaveError) as e:
                logger.debug(f"Error closing connection to {host_name}: {e}")

    async def close(self) -> None:
        """Close every open connection and release runner resources."""
        for host_name, connection in list(self._open.items()):
            try:
                await connection.close()
            except (OSError, TaskweaveError) as e:
                logger.warning(f"Error closing connection to {host_name}: {e}")
        self._open.clear()
        await self.runner.cleanup()
