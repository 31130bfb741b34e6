"""Inventory management for taskweave.

Parses grouped host definitions into a typed ``Inventory``: unique hosts,
groups with variables and nested child groups, host range patterns such as
``web[1:3]``, and deterministic group-then-host variable layering.

Supported sources:
- INI-style bracketed text (``[group]``, ``[group:vars]``, ``[group:children]``)
- YAML nested groups (``group: {hosts, vars, children}``, optionally under ``all``)
- JSON in the dynamic inventory ``--list`` shape with ``_meta.hostvars``
- Executable scripts, run with ``--list`` and parsed as JSON
"""

import json
import logging
import os
import re
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from .exceptions import ConfigParseError, InventoryCycleError, UnknownGroupError
from .secrets import load_yaml
from .types import HostConfig

if TYPE_CHECKING:
    from .config import RunConfig

logger = logging.getLogger(__name__)

ALL_GROUP = "all"
UNGROUPED_GROUP = "ungrouped"

# Inventory keys that map onto HostConfig attributes instead of host vars
CONNECTION_KEYS = {
    "ansible_host": "address",
    "address": "address",
    "ansible_port": "port",
    "port": "port",
    "ansible_user": "user",
    "user": "user",
    "ansible_connection": "connection",
    "connection": "connection",
    "credentials_ref": "credentials_ref",
    "ansible_credentials_ref": "credentials_ref",
}

RANGE_RE = re.compile(r"\[([0-9]+|[a-zA-Z]):([0-9]+|[a-zA-Z])(?::([0-9]+))?\]")


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables.

    Attributes:
        name: Group name (e.g., "webservers", "databases")
        hosts: Direct member hosts by name, in declaration order
        vars: Group-level variables inherited by all member hosts
        children: Child group names for hierarchical structures

    Example:
        >>> group = HostGroup(name="webservers", vars={"http_port": 80})
        >>> group.add_host(HostConfig(name="web01", address="192.168.1.10"))
    """

    name: str
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    children: list[str] = field(default_factory=list)

    def add_host(self, host: HostConfig) -> None:
        """Add a host to this group and record the membership on the host."""
        self.hosts[host.name] = host
        host.add_group(self.name)

    def add_child(self, name: str) -> None:
        """Add a child group name (idempotent)."""
        if name not in self.children:
            self.children.append(name)

    def get_host(self, name: str) -> HostConfig | None:
        """Get a direct member host by name."""
        return self.hosts.get(name)

    def list_hosts(self) -> list[HostConfig]:
        """Get the direct member hosts of this group."""
        return list(self.hosts.values())


@dataclass
class Inventory:
    """Resolved inventory: unique hosts, groups, and their relationships.

    Host identities are unique: adding a host that already exists merges its
    variables into the existing HostConfig instead of creating a second one.

    Attributes:
        groups: Groups by name, in document order
        hosts: Unique hosts by name, in document order
        source: Where the inventory was loaded from, for diagnostics

    Example:
        >>> inventory = Inventory()
        >>> inventory.add_host(HostConfig(name="web01"), "webservers")
        >>> [h.name for h in inventory.select("webservers")]
        ['web01']
    """

    groups: dict[str, HostGroup] = field(default_factory=dict)
    hosts: dict[str, HostConfig] = field(default_factory=dict)
    source: str | None = None

    def __post_init__(self) -> None:
        self.ensure_group(ALL_GROUP)

    def ensure_group(self, name: str) -> HostGroup:
        """Get a group by name, creating an empty one if needed."""
        group = self.groups.get(name)
        if group is None:
            group = HostGroup(name=name)
            self.groups[name] = group
        return group

    def add_group(self, group: HostGroup) -> None:
        """Add a group, registering its hosts in the unique host set."""
        existing = self.groups.get(group.name)
        if existing is not None:
            existing.vars.update(group.vars)
            for child in group.children:
                existing.add_child(child)
            group_hosts = list(group.hosts.values())
            group = existing
        else:
            group_hosts = list(group.hosts.values())
            group.hosts = {}
            self.groups[group.name] = group
        for host in group_hosts:
            self.add_host(host, group.name)

    def add_host(self, host: HostConfig, group_name: str | None = None) -> HostConfig:
        """Add a host, optionally into a group.

        Returns:
            The canonical HostConfig for this host name
        """
        existing = self.hosts.get(host.name)
        if existing is None:
            self.hosts[host.name] = host
            existing = host
        elif existing is not host:
            existing.vars.update(host.vars)
        if group_name is not None:
            self.ensure_group(group_name).add_host(existing)
        return existing

    def get_group(self, name: str) -> HostGroup | None:
        """Get a group by name."""
        return self.groups.get(name)

    def get_host(self, name: str) -> HostConfig | None:
        """Get a host by name."""
        return self.hosts.get(name)

    def list_groups(self) -> list[HostGroup]:
        """Get all groups, in document order."""
        return list(self.groups.values())

    def get_all_hosts(self) -> dict[str, HostConfig]:
        """Get all unique hosts by name, in document order."""
        return self.hosts

    def finalize(self) -> "Inventory":
        """Validate structure and fill in the implicit groups.

        Creates groups referenced only as children, checks for group
        cycles, puts every host in ``all`` and hosts without a real
        group in ``ungrouped``.

        Raises:
            InventoryCycleError: If a group contains itself transitively
        """
        for group in list(self.groups.values()):
            for child in group.children:
                self.ensure_group(child)
        self.check_cycles()

        all_group = self.groups[ALL_GROUP]
        for host in self.hosts.values():
            real_groups = [g for g in host.groups if g not in (ALL_GROUP, UNGROUPED_GROUP)]
            if not real_groups:
                self.ensure_group(UNGROUPED_GROUP).add_host(host)
            if host.name not in all_group.hosts:
                all_group.hosts[host.name] = host
                host.add_group(ALL_GROUP)
        return self

    def check_cycles(self) -> None:
        """Detect groups that contain themselves through ``children``."""
        done: set[str] = set()

        def visit(name: str, path: list[str]) -> None:
            if name in path:
                raise InventoryCycleError(path[path.index(name):] + [name])
            if name in done:
                return
            group = self.groups.get(name)
            if group is not None:
                for child in group.children:
                    visit(child, path + [name])
            done.add(name)

        for name in list(self.groups):
            visit(name, [])

    def group_hosts(self, name: str) -> list[HostConfig]:
        """All hosts of a group, including hosts of its descendant groups.

        Raises:
            UnknownGroupError: If the group does not exist
        """
        if name not in self.groups:
            raise UnknownGroupError(name)
        if name == ALL_GROUP:
            return list(self.hosts.values())

        names: set[str] = set()
        pending = [name]
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            group = self.groups[current]
            names.update(group.hosts)
            pending.extend(group.children)
        return [host for host_name, host in self.hosts.items() if host_name in names]

    def group_depths(self) -> dict[str, int]:
        """Nesting depth of every group: ``all`` is 0, top-level groups 1."""
        parents: dict[str, list[str]] = {name: [] for name in self.groups}
        for group in self.groups.values():
            for child in group.children:
                parents.setdefault(child, []).append(group.name)

        depths: dict[str, int] = {}

        def depth(name: str) -> int:
            if name not in depths:
                if name == ALL_GROUP:
                    depths[name] = 0
                else:
                    parent_names = [p for p in parents.get(name, []) if p != ALL_GROUP]
                    depths[name] = 1 + max((depth(p) for p in parent_names), default=0)
            return depths[name]

        for name in self.groups:
            depth(name)
        return depths

    def host_group_chain(self, host: HostConfig) -> list[str]:
        """Groups that apply to a host, least specific first.

        Includes groups reached through ``children``. Ordered by nesting
        depth, then by document order.
        """
        containing: set[str] = set()
        for name in self.groups:
            if name == ALL_GROUP or any(h.name == host.name for h in self.group_hosts(name)):
                containing.add(name)

        depths = self.group_depths()
        order = {name: index for index, name in enumerate(self.groups)}
        return sorted(containing, key=lambda name: (depths[name], order[name]))

    def group_vars_layers(self, host: HostConfig) -> list[tuple[str, dict[str, Any]]]:
        """Group variable layers for a host, least specific first."""
        return [(name, self.groups[name].vars) for name in self.host_group_chain(host)]

    def resolve_host_vars(self, host: HostConfig) -> dict[str, Any]:
        """Merge group variables then host variables into one mapping.

        Closer scope wins; document order breaks ties between groups at the
        same depth (later wins).
        """
        merged: dict[str, Any] = {}
        for _, layer in self.group_vars_layers(host):
            merged.update(layer)
        merged.update(host.vars)
        return merged

    def select(self, pattern: str) -> list[HostConfig]:
        """Resolve a host pattern to hosts, in inventory order.

        Raises:
            UnknownGroupError: If the pattern names an unknown group or host
        """
        from .host_filter import select_hosts

        return select_hosts(self, pattern)


def expand_host_pattern(pattern: str) -> list[str]:
    """Expand numeric and alphabetic ranges in a host name.

    Raises:
        ConfigParseError: If a range is malformed (e.g. start after end)

    Example:
        >>> expand_host_pattern("web[1:3]")
        ['web1', 'web2', 'web3']
        >>> expand_host_pattern("db[01:02].example.com")
        ['db01.example.com', 'db02.example.com']
        >>> expand_host_pattern("node[a:c]")
        ['nodea', 'nodeb', 'nodec']
    """
    match = RANGE_RE.search(pattern)
    if match is None:
        if "[" in pattern and "]" in pattern and ":" in pattern[pattern.index("["):]:
            raise ConfigParseError(f"Malformed host range in '{pattern}'")
        return [pattern]

    start, end, stride = match.group(1), match.group(2), match.group(3)
    step = int(stride) if stride else 1
    if step < 1:
        raise ConfigParseError(f"Range stride must be positive in '{pattern}'")

    if start.isdigit() and end.isdigit():
        first, last = int(start), int(end)
        width = len(start) if start.startswith("0") and len(start) > 1 else 0
        values = [str(i).zfill(width) for i in range(first, last + 1, step)]
    elif start.isalpha() and end.isalpha():
        first, last = ord(start), ord(end)
        values = [chr(i) for i in range(first, last + 1, step)]
    else:
        raise ConfigParseError(f"Mixed range bounds in '{pattern}'")

    if not values:
        raise ConfigParseError(f"Empty host range in '{pattern}': {start} is after {end}")

    prefix, suffix = pattern[: match.start()], pattern[match.end():]
    expanded: list[str] = []
    for value in values:
        expanded.extend(expand_host_pattern(f"{prefix}{value}{suffix}"))
    return expanded


def _split_host_vars(host_name: str, host_data: dict[str, Any] | None) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split inventory host data into HostConfig attributes and host vars.

    Connection keys (with or without the ``ansible_`` prefix) become
    HostConfig attributes; everything else stays a variable.
    """
    attrs: dict[str, Any] = {}
    host_vars: dict[str, Any] = {}
    for key, value in (host_data or {}).items():
        attr = CONNECTION_KEYS.get(key)
        if attr is None:
            host_vars[key] = value
            continue
        if attr == "port":
            try:
                value = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigParseError(
                    f"Invalid port {value!r} for host {host_name}", field=key
                ) from e
        attrs[attr] = value
    return attrs, host_vars


def _declare_host(
    inventory: Inventory,
    host_name: str,
    host_data: dict[str, Any] | None,
    group_name: str | None,
    config: "RunConfig | None" = None,
) -> HostConfig:
    """Create a host, or update it when it was declared before.

    A host may be listed in several groups; later declarations override
    connection attributes and variables of earlier ones.
    """
    attrs, host_vars = _split_host_vars(host_name, host_data)
    host = inventory.get_host(host_name)
    if host is None:
        defaults: dict[str, Any] = {}
        if config is not None:
            defaults["port"] = config.default_port
            defaults["connection"] = config.default_connection
            if config.default_user:
                defaults["user"] = config.default_user
        host = HostConfig(name=host_name, vars=host_vars, **{**defaults, **attrs})
    else:
        for attr, value in attrs.items():
            setattr(host, attr, value)
        host.vars.update(host_vars)
    return inventory.add_host(host, group_name)


def _parse_scalar(raw: str) -> Any:
    """Type an INI value the way YAML would (ints, bools, lists...)."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def load_inventory_ini(
    text: str,
    source: str | None = None,
    config: "RunConfig | None" = None,
) -> Inventory:
    """Load inventory from the bracketed text format.

    Example::

        mail.example.com

        [webservers]
        web[1:3] http_port=80
        lb ansible_host=10.0.0.5 ansible_port=2222

        [webservers:vars]
        ntp_server=ntp.example.com

        [production:children]
        webservers
    """
    inventory = Inventory(source=source)
    section = UNGROUPED_GROUP
    kind = "hosts"

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if " #" in line:
            line = line.split(" #", 1)[0].rstrip()

        if line.startswith("["):
            if not line.endswith("]"):
                raise ConfigParseError("Unterminated section header", path=source, field=f"line {lineno}")
            header = line[1:-1].strip()
            section, _, kind = header.partition(":")
            kind = kind or "hosts"
            if not section or kind not in ("hosts", "vars", "children"):
                raise ConfigParseError(
                    f"Invalid section header '[{header}]'", path=source, field=f"line {lineno}"
                )
            inventory.ensure_group(section)
            continue

        try:
            tokens = shlex.split(line)
        except ValueError as e:
            raise ConfigParseError(str(e), path=source, field=f"line {lineno}") from e

        if kind == "children":
            inventory.ensure_group(section).add_child(tokens[0])
        elif kind == "vars":
            if "=" not in line:
                raise ConfigParseError(
                    f"Expected key=value in [{section}:vars]", path=source, field=f"line {lineno}"
                )
            key, value = line.split("=", 1)
            inventory.ensure_group(section).vars[key.strip()] = _parse_scalar(value.strip())
        else:
            host_vars: dict[str, Any] = {}
            for token in tokens[1:]:
                if "=" not in token:
                    raise ConfigParseError(
                        f"Expected key=value, got '{token}'", path=source, field=f"line {lineno}"
                    )
                key, value = token.split("=", 1)
                host_vars[key] = _parse_scalar(value)
            try:
                names = expand_host_pattern(tokens[0])
            except ConfigParseError as e:
                raise ConfigParseError(e.message, path=source, field=f"line {lineno}") from e
            for name in names:
                _declare_host(inventory, name, dict(host_vars), section, config)

    return inventory.finalize()


def _load_yaml_group(
    inventory: Inventory,
    group_name: str,
    group_data: Any,
    source: str | None,
    config: "RunConfig | None",
) -> None:
    group = inventory.ensure_group(group_name)
    if group_data is None:
        return
    if not isinstance(group_data, dict):
        raise ConfigParseError(
            f"Group '{group_name}' must be a mapping", path=source, field=group_name
        )

    hosts = group_data.get("hosts") or {}
    if isinstance(hosts, list):
        hosts = {name: {} for name in hosts}
    if not isinstance(hosts, dict):
        raise ConfigParseError(
            f"Group '{group_name}' hosts must be a mapping or list", path=source, field=f"{group_name}.hosts"
        )
    for pattern, host_data in hosts.items():
        if host_data is not None and not isinstance(host_data, dict):
            raise ConfigParseError(
                f"Host '{pattern}' variables must be a mapping", path=source, field=f"{group_name}.hosts.{pattern}"
            )
        for name in expand_host_pattern(str(pattern)):
            _declare_host(inventory, name, host_data, group_name, config)

    group_vars = group_data.get("vars") or {}
    if not isinstance(group_vars, dict):
        raise ConfigParseError(
            f"Group '{group_name}' vars must be a mapping", path=source, field=f"{group_name}.vars"
        )
    group.vars.update(group_vars)

    children = group_data.get("children") or {}
    if isinstance(children, list):
        children = {name: None for name in children}
    for child_name, child_data in children.items():
        group.add_child(child_name)
        _load_yaml_group(inventory, child_name, child_data, source, config)


def load_inventory_yaml(
    data: dict[str, Any] | None,
    source: str | None = None,
    config: "RunConfig | None" = None,
) -> Inventory:
    """Load inventory from parsed YAML data.

    Expected structure::

        all:
          vars:
            ntp_server: ntp.example.com
          children:
            webservers:
              hosts:
                web[1:2]:
                  http_port: 80
            databases:
              hosts:
                db01:
                  ansible_host: 10.0.0.3

    Top-level groups without an ``all`` wrapper are accepted too.
    """
    inventory = Inventory(source=source)
    if data is None:
        return inventory.finalize()
    if not isinstance(data, dict):
        raise ConfigParseError("Inventory must be a mapping of groups", path=source)

    for group_name, group_data in data.items():
        _load_yaml_group(inventory, str(group_name), group_data, source, config)

    return inventory.finalize()


def load_inventory_json(
    data: dict[str, Any],
    source: str | None = None,
    config: "RunConfig | None" = None,
) -> Inventory:
    """Load inventory from the dynamic inventory JSON format.

    Example:
        >>> data = {
        ...     "webservers": {"hosts": ["web01"], "vars": {"http_port": 80}},
        ...     "_meta": {"hostvars": {"web01": {"ansible_host": "10.0.0.1"}}},
        ... }
        >>> inventory = load_inventory_json(data)
    """
    if not isinstance(data, dict):
        raise ConfigParseError("Inventory JSON must be an object", path=source)

    meta = data.get("_meta") or {}
    hostvars = meta.get("hostvars") or {}
    if not isinstance(hostvars, dict):
        raise ConfigParseError("_meta.hostvars must be an object", path=source, field="_meta.hostvars")

    inventory = Inventory(source=source)
    for group_name, group_data in data.items():
        if group_name == "_meta":
            continue
        group = inventory.ensure_group(group_name)

        # Shorthand: a group may be a plain list of host names
        if isinstance(group_data, list):
            group_data = {"hosts": group_data}
        if not isinstance(group_data, dict):
            raise ConfigParseError(
                f"Group '{group_name}' must be an object or list", path=source, field=group_name
            )

        hosts = group_data.get("hosts") or []
        if isinstance(hosts, dict):
            hosts = list(hosts)
        for host_name in hosts:
            host_data = hostvars.get(host_name) or {}
            _declare_host(inventory, host_name, host_data, group_name, config)

        group.vars.update(group_data.get("vars") or {})
        for child in group_data.get("children") or []:
            group.add_child(child)

    # Hosts that only appear in hostvars still belong to the inventory
    for host_name, host_data in hostvars.items():
        if host_name not in inventory.hosts:
            _declare_host(inventory, host_name, host_data, None, config)

    return inventory.finalize()


def load_inventory_script(
    script_path: str | Path,
    config: "RunConfig | None" = None,
) -> Inventory:
    """Run an executable inventory source with ``--list`` and parse its JSON.

    Raises:
        ConfigParseError: If the script fails or prints invalid JSON
    """
    path = Path(script_path)
    try:
        result = subprocess.run(
            [str(path), "--list"],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        stderr = getattr(e, "stderr", "") or ""
        raise ConfigParseError(f"Inventory script failed: {e} {stderr}".strip(), path=str(path)) from e

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ConfigParseError(f"Inventory script printed invalid JSON: {e}", path=str(path)) from e
    return load_inventory_json(data, source=str(path), config=config)


def load_inventory(
    inventory_file: str | Path,
    require_hosts: bool = True,
    config: "RunConfig | None" = None,
) -> Inventory:
    """Load inventory from a file, auto-detecting the format.

    Args:
        inventory_file: Path to an inventory file or executable script
        require_hosts: Raise ConfigParseError when no hosts are loaded
        config: Run configuration supplying connection defaults

    Returns:
        Finalized Inventory

    Raises:
        ConfigParseError: If the file is unreadable, malformed or empty
        InventoryCycleError: If groups nest into a cycle

    Example:
        >>> inventory = load_inventory("hosts.ini")
        >>> inventory = load_inventory("hosts.yml")
        >>> inventory = load_inventory("./ec2_inventory.py")
    """
    path = Path(inventory_file)
    source = str(path)

    if os.access(path, os.X_OK) and path.is_file() and path.suffix not in (".yml", ".yaml", ".json", ".ini"):
        inventory = load_inventory_script(path, config=config)
    else:
        try:
            content = path.read_text()
        except OSError as e:
            raise ConfigParseError(f"Cannot read inventory: {e}", path=source) from e

        stripped = content.lstrip()
        if stripped.startswith("{"):
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                raise ConfigParseError(f"Invalid JSON: {e}", path=source) from e
            inventory = load_inventory_json(data, source=source, config=config)
        elif path.suffix in (".yml", ".yaml"):
            try:
                data = load_yaml(content)
            except yaml.YAMLError as e:
                raise ConfigParseError(f"Invalid YAML: {e}", path=source) from e
            inventory = load_inventory_yaml(data, source=source, config=config)
        else:
            inventory = load_inventory_ini(content, source=source, config=config)

    if require_hosts and not inventory.get_all_hosts():
        raise ConfigParseError("No hosts loaded from inventory", path=source)

    logger.info(f"Loaded {len(inventory.hosts)} host(s) in {len(inventory.groups)} group(s) from {source}")
    return inventory


def load_localhost(interpreter: str | None = None) -> Inventory:
    """Generate a localhost-only inventory for local execution."""
    localhost = HostConfig(
        name="localhost",
        address="127.0.0.1",
        connection="local",
        vars={"ansible_python_interpreter": interpreter or sys.executable},
    )
    inventory = Inventory(source="localhost")
    inventory.add_host(localhost)
    return inventory.finalize()
