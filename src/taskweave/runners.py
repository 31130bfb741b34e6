"""Module runners for taskweave.

The executor never interprets a task's action or arguments itself: it hands
them to a ``ModuleRunner`` together with the host's open connection and
gets back a ``ModuleResult``. Runners are pluggable; ``CommandModuleRunner``
is the built-in reference runner and understands a handful of actions that
map directly onto shell commands.
"""

import logging
import shlex
from abc import ABC, abstractmethod
from typing import Any

from .connection import Connection
from .types import ModuleResult

logger = logging.getLogger(__name__)


class ModuleRunner(ABC):
    """Abstract base class for module execution strategies."""

    @abstractmethod
    async def invoke(
        self,
        action: str,
        args: dict[str, Any],
        connection: Connection,
        timeout: float | None = None,
    ) -> ModuleResult:
        """Execute one module invocation on a host.

        Args:
            action: Module identifier from the task
            args: Fully rendered module arguments
            connection: Open connection to the target host
            timeout: Invocation timeout in seconds

        Returns:
            ModuleResult containing execution outcome

        Raises:
            HostUnreachableError: If the connection dropped
            TaskTimeoutError: If the invocation exceeded the timeout
        """

    async def cleanup(self) -> None:
        """Release resources held by this runner."""


class CommandModuleRunner(ModuleRunner):
    """Reference runner executing shell commands over the host connection.

    Supported actions:
        ping: Checks the connection; returns ``{"ping": "pong"}``
        command, shell, raw: Run ``cmd`` (or the free-form string);
            ``chdir`` changes directory first, ``creates`` skips the
            command when the path exists

    Example:
        >>> runner = CommandModuleRunner()
        >>> result = await runner.invoke("command", {"cmd": "uptime"}, connection)
        >>> result.output["rc"]
        0
    """

    COMMAND_ACTIONS = frozenset({"command", "shell", "raw"})

    async def invoke(
        self,
        action: str,
        args: dict[str, Any],
        connection: Connection,
        timeout: float | None = None,
    ) -> ModuleResult:
        host_name = connection.host.name
        if action == "ping":
            return await self._ping(connection, timeout)
        if action in self.COMMAND_ACTIONS:
            return await self._command(args, connection, timeout)
        return ModuleResult.error_result(host_name, f"Module '{action}' not found")

    async def _ping(self, connection: Connection, timeout: float | None) -> ModuleResult:
        stdout, stderr, rc = await connection.run("echo pong", timeout=timeout)
        if rc != 0 or stdout.strip() != "pong":
            return ModuleResult.error_result(
                connection.host.name, f"ping failed (rc={rc}): {stderr.strip()}"
            )
        return ModuleResult.success_result(connection.host.name, {"ping": "pong"})

    async def _command(
        self,
        args: dict[str, Any],
        connection: Connection,
        timeout: float | None,
    ) -> ModuleResult:
        host_name = connection.host.name
        cmd = args.get("cmd") or args.get("_raw_params")
        if not cmd:
            return ModuleResult.error_result(host_name, "no command given")
        cmd = str(cmd)

        creates = args.get("creates")
        if creates:
            _, _, rc = await connection.run(f"test -e {shlex.quote(str(creates))}", timeout=timeout)
            if rc == 0:
                return ModuleResult.success_result(
                    host_name,
                    {"cmd": cmd, "rc": 0, "msg": f"skipped, since {creates} exists"},
                )

        full_command = cmd
        if args.get("chdir"):
            full_command = f"cd {shlex.quote(str(args['chdir']))} && {cmd}"

        stdout, stderr, rc = await connection.run(full_command, timeout=timeout)
        output = {
            "cmd": cmd,
            "rc": rc,
            "stdout": stdout.rstrip("\n"),
            "stderr": stderr.rstrip("\n"),
            "stdout_lines": stdout.splitlines(),
        }
        if rc != 0:
            logger.debug(f"Command failed on {host_name}: rc={rc}")
            return ModuleResult(
                host_name=host_name,
                success=False,
                changed=True,
                output={**output, "failed": True, "msg": "non-zero return code"},
                error=f"non-zero return code {rc}",
            )
        return ModuleResult.success_result(host_name, output, changed=True)
