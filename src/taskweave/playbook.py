"""Playbook model and loader for taskweave.

A playbook is a YAML list of plays. Each play binds a host selector to an
ordered task list and an ordered handler list::

    - name: Configure web servers
      hosts: webservers
      serial: 2
      vars:
        http_port: 80
      tasks:
        - name: Install packages
          package:
            name: "{{ item }}"
            state: present
          loop: [httpd, php]
          notify: restart httpd
      handlers:
        - name: restart httpd
          service: name=httpd state=restarted

Parsing is strict: anything malformed raises ``ConfigParseError`` naming the
file and the offending field, before any host is contacted.
"""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigParseError
from .secrets import load_yaml

logger = logging.getLogger(__name__)

FREE_FORM_KEY = "_raw_params"
FLUSH_HANDLERS = "flush_handlers"

TASK_KEYWORDS = frozenset({
    "name",
    "action",
    "args",
    "when",
    "loop",
    "with_items",
    "with_fileglob",
    "loop_control",
    "notify",
    "vars",
    "register",
    "retries",
    "delay",
    "until",
    "ignore_errors",
    "timeout",
})

PLAY_KEYWORDS = frozenset({
    "name",
    "hosts",
    "vars",
    "vars_files",
    "tasks",
    "handlers",
    "serial",
    "required",
})


@dataclass(frozen=True)
class Task:
    """One declarative step of a play.

    Attributes:
        name: Display name
        action: Opaque module identifier passed to the module runner
        args: Opaque module arguments (templated, never interpreted)
        when: Condition expression(s); all must be true for the task to run
        loop: Loop source: a list, or a template rendering to a list
        fileglob: Glob pattern whose sorted matches form the loop source
        loop_var: Variable bound to the current item (run default when None)
        index_var: Optional variable bound to the current item index
        notify: Handler names to notify when the task reports a change
        vars: Task-level variables
        register: Fact name to store the task result under
        retries: Extra invocations allowed when the task fails (or ``until`` is false)
        delay: Seconds to wait between retries
        until: Condition that must hold for the result to be accepted
        ignore_errors: Keep going on this host when the task fails
        timeout: Per-task module timeout override in seconds
    """

    name: str
    action: str
    args: dict[str, Any] = field(default_factory=dict)
    when: Any = None
    loop: Any = None
    fileglob: str | None = None
    loop_var: str | None = None
    index_var: str | None = None
    notify: tuple[str, ...] = ()
    vars: dict[str, Any] = field(default_factory=dict)
    register: str | None = None
    retries: int = 0
    delay: float = 0.0
    until: Any = None
    ignore_errors: bool = False
    timeout: float | None = None

    @property
    def has_loop(self) -> bool:
        return self.loop is not None or self.fileglob is not None

    @property
    def is_flush(self) -> bool:
        """True for ``meta: flush_handlers`` tasks."""
        return self.action == "meta" and self.args.get(FREE_FORM_KEY) == FLUSH_HANDLERS


@dataclass(frozen=True)
class Play:
    """A named unit binding a host selector to tasks and handlers.

    Attributes:
        name: Display name
        hosts: Host selector pattern (see host_filter.select_hosts)
        tasks: Ordered tasks
        handlers: Ordered handlers; names are unique
        vars: Play-level variables
        serial: Batch size; None runs all selected hosts as one batch
        required: Whether failures in this play make the run unsuccessful
    """

    name: str
    hosts: str
    tasks: tuple[Task, ...] = ()
    handlers: tuple[Task, ...] = ()
    vars: dict[str, Any] = field(default_factory=dict)
    serial: int | str | None = None
    required: bool = True

    def get_handler(self, name: str) -> Task | None:
        """Get a handler by name."""
        for handler in self.handlers:
            if handler.name == name:
                return handler
        return None

    def batch_size(self, host_count: int) -> int:
        """Resolve ``serial`` (a count or a percentage) to a batch size."""
        if self.serial is None or host_count == 0:
            return max(host_count, 1)
        if isinstance(self.serial, str) and self.serial.endswith("%"):
            percent = float(self.serial[:-1])
            return max(1, int(host_count * percent / 100))
        return max(1, int(self.serial))


@dataclass
class Playbook:
    """An ordered list of plays loaded from one file."""

    plays: list[Play] = field(default_factory=list)
    source: str | None = None


def parse_free_form(value: str) -> dict[str, Any]:
    """Parse a module's string shorthand into arguments.

    ``name=httpd state=started`` becomes a mapping; anything else is kept
    as a free-form string.

    Example:
        >>> parse_free_form("name=httpd state=started")
        {'name': 'httpd', 'state': 'started'}
        >>> parse_free_form("uptime -p")
        {'_raw_params': 'uptime -p'}
    """
    try:
        tokens = shlex.split(value)
    except ValueError:
        return {FREE_FORM_KEY: value}
    if tokens and all("=" in t and not t.startswith("=") for t in tokens):
        return dict(t.split("=", 1) for t in tokens)
    return {FREE_FORM_KEY: value}


class _Parser:
    """Validating parser for one playbook file."""

    def __init__(self, source: str | None, base_dir: Path | None = None) -> None:
        self.source = source
        self.base_dir = base_dir or Path.cwd()

    def error(self, message: str, where: str) -> ConfigParseError:
        return ConfigParseError(message, path=self.source, field=where)

    def mapping(self, value: Any, where: str) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise self.error(f"Expected a mapping, got {type(value).__name__}", where)
        return value

    def names(self, value: Any, where: str) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return tuple(value)
        raise self.error("Expected a name or a list of names", where)

    def number(self, value: Any, where: str, kind: type = float, minimum: float = 0) -> Any:
        try:
            number = kind(value)
        except (TypeError, ValueError) as e:
            raise self.error(f"Expected a number, got {value!r}", where) from e
        if number < minimum:
            raise self.error(f"Must be at least {minimum}, got {number}", where)
        return number

    def task(self, data: Any, where: str) -> Task:
        if not isinstance(data, dict):
            raise self.error("Task must be a mapping", where)

        action_keys = [k for k in data if k not in TASK_KEYWORDS]
        args: dict[str, Any] = {}
        if "action" in data:
            if action_keys:
                raise self.error(
                    f"Conflicting action statements: action, {', '.join(action_keys)}", where
                )
            action = data["action"]
            if not isinstance(action, str) or not action.strip():
                raise self.error("action must be a non-empty string", f"{where}.action")
            action, _, inline = action.strip().partition(" ")
            if inline:
                args.update(parse_free_form(inline))
        elif len(action_keys) == 1:
            action = action_keys[0]
            value = data[action]
            if isinstance(value, dict):
                args.update(value)
            elif isinstance(value, str):
                args.update(parse_free_form(value))
            elif value is not None:
                raise self.error("Module arguments must be a mapping or a string", f"{where}.{action}")
        elif not action_keys:
            raise self.error("No action specified for task", where)
        else:
            raise self.error(
                f"Conflicting action statements: {', '.join(action_keys)}", where
            )

        args.update(self.mapping(data.get("args"), f"{where}.args"))

        if "loop" in data and "with_items" in data:
            raise self.error("Use either loop or with_items, not both", where)
        loop = data.get("loop", data.get("with_items"))
        if loop is not None and not isinstance(loop, (list, str)):
            raise self.error("loop must be a list or a template string", f"{where}.loop")

        fileglob = data.get("with_fileglob")
        if fileglob is not None:
            if loop is not None:
                raise self.error("with_fileglob cannot be combined with loop", where)
            if not isinstance(fileglob, str):
                raise self.error("with_fileglob must be a glob pattern string", f"{where}.with_fileglob")

        loop_control = self.mapping(data.get("loop_control"), f"{where}.loop_control")
        unknown = set(loop_control) - {"loop_var", "index_var"}
        if unknown:
            raise self.error(f"Unknown loop_control key(s): {', '.join(sorted(unknown))}", f"{where}.loop_control")

        timeout = data.get("timeout")
        register = data.get("register")
        if register is not None and not isinstance(register, str):
            raise self.error("register must be a variable name", f"{where}.register")

        name = data.get("name") or (action if not args else f"{action} {_summarize(args)}")
        return Task(
            name=str(name),
            action=action,
            args=args,
            when=data.get("when"),
            loop=loop,
            fileglob=fileglob,
            loop_var=loop_control.get("loop_var"),
            index_var=loop_control.get("index_var"),
            notify=self.names(data.get("notify"), f"{where}.notify"),
            vars=self.mapping(data.get("vars"), f"{where}.vars"),
            register=register,
            retries=self.number(data.get("retries", 0), f"{where}.retries", int),
            delay=self.number(data.get("delay", 0), f"{where}.delay"),
            until=data.get("until"),
            ignore_errors=bool(data.get("ignore_errors", False)),
            timeout=None if timeout is None else self.number(timeout, f"{where}.timeout"),
        )

    def vars_files(self, value: Any, where: str) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for index, name in enumerate(self.names(value, where)):
            path = Path(name)
            if not path.is_absolute():
                path = self.base_dir / path
            try:
                data = load_yaml(path.read_text())
            except (OSError, yaml.YAMLError) as e:
                raise self.error(f"Cannot load vars file {name}: {e}", f"{where}[{index}]") from e
            merged.update(self.mapping(data, f"{where}[{index}]"))
        return merged

    def play(self, data: Any, where: str) -> Play:
        if not isinstance(data, dict):
            raise self.error("Play must be a mapping", where)

        unknown = sorted(set(data) - PLAY_KEYWORDS)
        if unknown:
            raise self.error(f"Unknown play keyword(s): {', '.join(unknown)}", f"{where}.{unknown[0]}")

        hosts = data.get("hosts")
        if isinstance(hosts, list):
            hosts = ",".join(str(h) for h in hosts)
        if not isinstance(hosts, str) or not hosts.strip():
            raise self.error("Play requires a hosts selector", f"{where}.hosts")

        tasks_data = data.get("tasks") or []
        handlers_data = data.get("handlers") or []
        if not isinstance(tasks_data, list):
            raise self.error("tasks must be a list", f"{where}.tasks")
        if not isinstance(handlers_data, list):
            raise self.error("handlers must be a list", f"{where}.handlers")

        tasks = tuple(self.task(t, f"{where}.tasks[{i}]") for i, t in enumerate(tasks_data))
        handlers = tuple(self.task(h, f"{where}.handlers[{i}]") for i, h in enumerate(handlers_data))

        seen: set[str] = set()
        for index, handler in enumerate(handlers):
            if handler.name in seen:
                raise self.error(f"Duplicate handler name '{handler.name}'", f"{where}.handlers[{index}].name")
            seen.add(handler.name)

        for kind, items in (("tasks", tasks), ("handlers", handlers)):
            for index, task in enumerate(items):
                for name in task.notify:
                    if name not in seen:
                        raise self.error(
                            f"Task '{task.name}' notifies unknown handler '{name}'",
                            f"{where}.{kind}[{index}].notify",
                        )

        serial = data.get("serial")
        if serial is not None:
            if isinstance(serial, str) and serial.endswith("%"):
                self.number(serial[:-1], f"{where}.serial", float, minimum=0.0001)
            else:
                serial = self.number(serial, f"{where}.serial", int, minimum=1)

        play_vars = self.vars_files(data.get("vars_files"), f"{where}.vars_files")
        play_vars.update(self.mapping(data.get("vars"), f"{where}.vars"))

        return Play(
            name=str(data.get("name") or hosts),
            hosts=hosts.strip(),
            tasks=tasks,
            handlers=handlers,
            vars=play_vars,
            serial=serial,
            required=bool(data.get("required", True)),
        )


def _summarize(args: dict[str, Any]) -> str:
    if FREE_FORM_KEY in args:
        return str(args[FREE_FORM_KEY])
    return " ".join(f"{k}={v}" for k, v in args.items())


def parse_playbook(data: Any, source: str | None = None, base_dir: Path | None = None) -> Playbook:
    """Build a Playbook from parsed YAML data.

    Raises:
        ConfigParseError: If any play, task or handler is malformed
    """
    parser = _Parser(source, base_dir)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not data:
        raise ConfigParseError("Playbook must be a non-empty list of plays", path=source)
    plays = [parser.play(play, f"plays[{i}]") for i, play in enumerate(data)]
    return Playbook(plays=plays, source=source)


def load_playbook(path: str | Path) -> Playbook:
    """Load and validate a playbook file.

    Raises:
        ConfigParseError: If the file is unreadable or malformed

    Example:
        >>> playbook = load_playbook("site.yml")
        >>> [play.name for play in playbook.plays]
        ['Configure web servers']
    """
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigParseError(f"Cannot read playbook: {e}", path=str(path)) from e

    try:
        data = load_yaml(content)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Invalid YAML: {e}", path=str(path)) from e

    playbook = parse_playbook(data, source=str(path), base_dir=path.parent)
    logger.info(f"Loaded {len(playbook.plays)} play(s) from {path}")
    return playbook
