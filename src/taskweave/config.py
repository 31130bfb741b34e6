"""Run configuration for taskweave.

A single immutable ``RunConfig`` is built once per run and passed explicitly
to every component. Values are layered: built-in defaults, then an optional
config file (YAML or JSON), then ``TASKWEAVE_*`` environment variables, then
command-line overrides.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigParseError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    Path("taskweave.yml"),
    Path.home() / ".taskweave" / "config.yml",
)

DEFAULT_FORKS = 5
MAX_FORKS = 500
DEFAULT_TIMEOUT = 300.0

ENV_PREFIX = "TASKWEAVE_"

MERGE_POLICIES = ("replace", "merge")
SECRETS_PROVIDERS = ("env", "vault", "none")


@dataclass(frozen=True)
class RunConfig:
    """Immutable configuration for one run.

    Attributes:
        forks: Maximum number of hosts executing concurrently
        timeout: Default per-task module timeout in seconds
        connect_timeout: Timeout for establishing a host connection
        default_connection: Connection type for hosts that do not set one
        default_user: Remote user for hosts that do not set one
        default_port: Port for hosts that do not set one
        merge_policy: How collections merge across scopes ("replace" or "merge")
        loop_var: Default variable name bound to the current loop item
        extra_vars: Command-line variables, highest precedence
        secrets_provider: Secrets backend name ("env", "vault" or "none")
        known_hosts: known_hosts file for SSH, None disables checking,
            empty string uses the asyncssh default
    """

    forks: int = DEFAULT_FORKS
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = 30.0
    default_connection: str = "ssh"
    default_user: str | None = None
    default_port: int = 22
    merge_policy: str = "replace"
    loop_var: str = "item"
    extra_vars: dict[str, Any] = field(default_factory=dict)
    secrets_provider: str = "env"
    known_hosts: str | None = ""

    def __post_init__(self) -> None:
        if not isinstance(self.forks, int) or self.forks < 1:
            raise ConfigParseError(f"forks must be a positive integer, got {self.forks!r}", field="forks")
        if self.forks > MAX_FORKS:
            raise ConfigParseError(f"forks must be at most {MAX_FORKS}, got {self.forks}", field="forks")
        if self.timeout <= 0:
            raise ConfigParseError(f"timeout must be positive, got {self.timeout!r}", field="timeout")
        if self.merge_policy not in MERGE_POLICIES:
            raise ConfigParseError(
                f"merge_policy must be one of {', '.join(MERGE_POLICIES)}", field="merge_policy"
            )
        if self.secrets_provider not in SECRETS_PROVIDERS:
            raise ConfigParseError(
                f"secrets_provider must be one of {', '.join(SECRETS_PROVIDERS)}",
                field="secrets_provider",
            )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str | None = None) -> "RunConfig":
        """Create from a dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigParseError(
                f"Unknown configuration key(s): {', '.join(unknown)}",
                path=source,
                field=unknown[0],
            )
        return cls(**data)

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "extra_vars" in changes:
            changes["extra_vars"] = {**self.extra_vars, **changes["extra_vars"]}
        return replace(self, **changes)

    def format_text(self) -> str:
        """Format configuration as human-readable text."""
        lines = [
            f"Forks: {self.forks}",
            f"Timeout: {self.timeout}s",
            f"Connect timeout: {self.connect_timeout}s",
            f"Default connection: {self.default_connection}",
            f"Merge policy: {self.merge_policy}",
            f"Secrets provider: {self.secrets_provider}",
        ]
        if self.default_user:
            lines.append(f"Default user: {self.default_user}")
        if self.extra_vars:
            lines.append("Extra vars: " + ", ".join(sorted(self.extra_vars)))
        return "\n".join(lines)


def _coerce(name: str, raw: str) -> Any:
    """Convert an environment variable string to the field's type."""
    if name in ("forks", "default_port"):
        return int(raw)
    if name in ("timeout", "connect_timeout"):
        return float(raw)
    return raw


def config_from_env(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect TASKWEAVE_* overrides from the environment.

    Example:
        TASKWEAVE_FORKS=20 -> {"forks": 20}
    """
    environ = os.environ if environ is None else environ
    result: dict[str, Any] = {}
    for f in fields(RunConfig):
        if f.name == "extra_vars":
            continue
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            try:
                result[f.name] = _coerce(f.name, environ[key])
            except ValueError as e:
                raise ConfigParseError(f"Invalid value for {key}: {e}", field=key) from e
    return result


def read_config_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML or JSON configuration file into a dictionary."""
    path = Path(path)
    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigParseError(f"Cannot read config file: {e}", path=str(path)) from e

    try:
        if path.suffix == ".json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigParseError(f"Invalid config file: {e}", path=str(path)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigParseError("Config file must contain a mapping", path=str(path))
    return data


def load_config(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> RunConfig:
    """Build the RunConfig for a run.

    Args:
        path: Explicit config file. When None, the first existing file in
            DEFAULT_CONFIG_PATHS is used, if any.
        environ: Environment mapping (defaults to os.environ)
        **overrides: Command-line overrides; None values are ignored

    Returns:
        Immutable RunConfig
    """
    data: dict[str, Any] = {}
    source: str | None = None

    if path is None:
        for candidate in DEFAULT_CONFIG_PATHS:
            if candidate.is_file():
                path = candidate
                break

    if path is not None:
        source = str(path)
        data.update(read_config_file(path))
        logger.debug(f"Loaded config from {source}")

    data.update(config_from_env(environ))
    config = RunConfig.from_dict(data, source=source)
    return config.with_overrides(**overrides)
