"""Type definitions for taskweave.

This module defines the core data types shared by the inventory, the
executor and the result aggregator: hosts, module results returned by the
external module runner, and the per-task results the engine records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from getpass import getuser
from typing import Any


@dataclass
class HostConfig:
    """Configuration for a single host in the inventory.

    Attributes:
        name: Unique identifier (alias) for the host, e.g. "web01"
        address: Hostname or IP address used to connect (defaults to name)
        port: SSH port number (default: 22)
        user: Username for authentication (default: current user)
        connection: Connection type - "ssh" for remote, "local" for localhost
        credentials_ref: Opaque credentials reference passed to the
            connection provider (resolved through the secrets provider)
        groups: Names of the groups this host is a direct member of,
            in the order they were declared
        vars: Host-level variables from the inventory

    Example:
        >>> host = HostConfig(name="web01", address="192.168.1.10", user="admin")
        >>> host.port
        22
        >>> host.is_local
        False
    """

    name: str
    address: str = ""
    port: int = 22
    user: str = field(default_factory=getuser)
    connection: str = "ssh"
    credentials_ref: str | None = None
    groups: list[str] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.address:
            self.address = self.name

    @property
    def is_local(self) -> bool:
        """Check if this host uses local execution (no SSH)."""
        return self.connection == "local"

    def add_group(self, group_name: str) -> None:
        """Record membership in a group (idempotent, keeps order)."""
        if group_name not in self.groups:
            self.groups.append(group_name)

    def connection_vars(self) -> dict[str, Any]:
        """Connection attributes exposed to templates as variables."""
        return {
            "inventory_hostname": self.name,
            "ansible_host": self.address,
            "ansible_port": self.port,
            "ansible_user": self.user,
            "ansible_connection": self.connection,
            "group_names": sorted(g for g in self.groups if g not in ("all", "ungrouped")),
        }


class TaskStatus(str, Enum):
    """Outcome of one task instance on one host."""

    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


@dataclass
class ModuleResult:
    """Result returned by a module runner for one invocation.

    Attributes:
        host_name: Name of the host where the module was executed
        success: Whether the execution succeeded
        changed: Whether the module made changes
        output: Module output data (opaque to the engine)
        error: Error message if execution failed
        unreachable: True when the host dropped during the invocation

    Example:
        >>> result = ModuleResult.success_result("web01", {"ping": "pong"})
        >>> result.success
        True
    """

    host_name: str
    success: bool
    changed: bool = False
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    unreachable: bool = False

    @classmethod
    def success_result(
        cls, host_name: str, output: dict[str, Any], changed: bool = False
    ) -> "ModuleResult":
        """Create a successful result."""
        return cls(host_name=host_name, success=True, changed=changed, output=output)

    @classmethod
    def error_result(
        cls, host_name: str, error: str, unreachable: bool = False
    ) -> "ModuleResult":
        """Create an error result."""
        return cls(
            host_name=host_name,
            success=False,
            output={"failed": True, "msg": error},
            error=error,
            unreachable=unreachable,
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskResult:
    """Recorded outcome of one task instance on one host.

    Attributes:
        host: Host name
        task: Task instance label (task name plus loop item, if any)
        status: Final status of the instance
        msg: Human-readable message or diagnostic
        output: Payload returned by the module runner
        play: Name of the play the task belongs to
        attempts: Number of module invocations made (retries included)
        loop_item: Loop item bound for this instance, if looping
        is_handler: True when the instance ran as a handler
        ignored: True when a failure was tolerated by ``ignore_errors``
        timestamp: ISO-8601 UTC timestamp of when the result was recorded
    """

    host: str
    task: str
    status: TaskStatus
    msg: str = ""
    output: dict[str, Any] = field(default_factory=dict)
    play: str = ""
    attempts: int = 0
    loop_item: Any = None
    is_handler: bool = False
    ignored: bool = False
    timestamp: str = field(default_factory=_now)

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        """Check if the task failed or the host was unreachable."""
        return self.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)

    @property
    def ok(self) -> bool:
        """Check if the task succeeded (ok or changed)."""
        return self.status in (TaskStatus.OK, TaskStatus.CHANGED)

    def outcome(self) -> tuple[str, str, str]:
        """Timestamp-free identity of this result, used to compare runs."""
        return (self.host, self.task, self.status.value)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "host": self.host,
            "play": self.play,
            "task": self.task,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.msg:
            data["msg"] = self.msg
        if self.output:
            data["output"] = self.output
        if self.attempts > 1:
            data["attempts"] = self.attempts
        if self.loop_item is not None:
            data["item"] = self.loop_item
        if self.is_handler:
            data["handler"] = True
        if self.ignored:
            data["ignored"] = True
        return data
