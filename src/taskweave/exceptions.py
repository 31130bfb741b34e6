"""Exception hierarchy for taskweave.

Errors fall into two families:

- Parse/configuration errors (``ConfigParseError``, ``InventoryCycleError``,
  ``UnknownGroupError``) abort a run before any host is touched.
- Runtime errors (``ConnectionError``, ``ModuleExecutionError``,
  ``UndefinedVariableError`` raised while rendering a task, ...) are isolated
  to one host and converted into task results by the executor.
"""

from typing import Any


class ErrorTypes:
    """String constants classifying runtime failures."""

    CONFIG_PARSE = "config_parse"
    INVENTORY_CYCLE = "inventory_cycle"
    UNKNOWN_GROUP = "unknown_group"
    UNDEFINED_VARIABLE = "undefined_variable"
    CIRCULAR_REFERENCE = "circular_reference"
    TEMPLATE_ERROR = "template_error"
    CONNECTION_FAILED = "connection_failed"
    HOST_UNREACHABLE = "host_unreachable"
    MODULE_EXECUTION_ERROR = "module_execution_error"
    MODULE_TIMEOUT = "module_timeout"
    SECRET_RESOLUTION = "secret_resolution"
    UNKNOWN = "unknown"


class TaskweaveError(Exception):
    """Base class for all taskweave errors.

    Attributes:
        message: Human-readable description
        error_type: One of the ErrorTypes constants
        context: Extra structured details (host, task, file, ...)
    """

    error_type = ErrorTypes.UNKNOWN

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = context

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            **self.context,
        }


class ConfigParseError(TaskweaveError):
    """Inventory, playbook or config file is malformed.

    Fatal: raised before any execution starts. ``path`` and ``field``
    identify the offending file and field when known.
    """

    error_type = ErrorTypes.CONFIG_PARSE

    def __init__(self, message: str, path: str | None = None, field: str | None = None) -> None:
        super().__init__(message, path=path, field=field)
        self.path = path
        self.field = field

    def __str__(self) -> str:
        location = ""
        if self.path:
            location = self.path
            if self.field:
                location += f" ({self.field})"
            location += ": "
        elif self.field:
            location = f"{self.field}: "
        return f"{location}{self.message}"


class InventoryCycleError(TaskweaveError):
    """A group contains itself, directly or transitively."""

    error_type = ErrorTypes.INVENTORY_CYCLE

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Group cycle detected: {' -> '.join(cycle)}", cycle=cycle
        )
        self.cycle = cycle


class UnknownGroupError(TaskweaveError):
    """A host pattern references a group or host that does not exist."""

    error_type = ErrorTypes.UNKNOWN_GROUP

    def __init__(self, name: str, pattern: str | None = None) -> None:
        message = f"Unknown group or host '{name}'"
        if pattern and pattern != name:
            message += f" in pattern '{pattern}'"
        super().__init__(message, name=name, pattern=pattern)
        self.name = name


class UndefinedVariableError(TaskweaveError):
    """A referenced variable is not visible in the current scope stack."""

    error_type = ErrorTypes.UNDEFINED_VARIABLE

    def __init__(self, name: str, detail: str | None = None) -> None:
        message = f"Undefined variable '{name}'"
        if detail:
            message += f": {detail}"
        super().__init__(message, name=name)
        self.name = name


class CircularReferenceError(TaskweaveError):
    """Variable interpolation loops back on itself."""

    error_type = ErrorTypes.CIRCULAR_REFERENCE

    def __init__(self, chain: list[str]) -> None:
        super().__init__(
            f"Circular variable reference: {' -> '.join(chain)}", chain=chain
        )
        self.chain = chain


class TemplateError(TaskweaveError):
    """A template or condition failed while being evaluated.

    Covers runtime errors raised inside an expression, such as comparing a
    string with a number or dividing by zero.
    """

    error_type = ErrorTypes.TEMPLATE_ERROR

    def __init__(self, message: str, template: str | None = None) -> None:
        super().__init__(message, template=template)
        self.template = template


class SecretResolutionError(TaskweaveError):
    """A secret reference could not be resolved by the secrets provider."""

    error_type = ErrorTypes.SECRET_RESOLUTION


class ConnectionError(TaskweaveError):
    """Connecting to a host failed. Non-fatal to the run."""

    error_type = ErrorTypes.CONNECTION_FAILED

    def __init__(self, host: str, message: str) -> None:
        super().__init__(f"Failed to connect to {host}: {message}", host=host)
        self.host = host


class HostUnreachableError(ConnectionError):
    """An established connection dropped while a task was running."""

    error_type = ErrorTypes.HOST_UNREACHABLE


class ModuleExecutionError(TaskweaveError):
    """A module invocation failed for a single task on a single host."""

    error_type = ErrorTypes.MODULE_EXECUTION_ERROR

    def __init__(self, message: str, host: str | None = None, action: str | None = None) -> None:
        super().__init__(message, host=host, action=action)
        self.host = host
        self.action = action


class TaskTimeoutError(ModuleExecutionError):
    """A module invocation exceeded its timeout."""

    error_type = ErrorTypes.MODULE_TIMEOUT
