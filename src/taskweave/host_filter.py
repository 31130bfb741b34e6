"""Host pattern selection and limiting for taskweave.

Two related features live here:

- ``select_hosts`` resolves a play's ``hosts:`` selector against the
  inventory. Terms are separated by ``,`` or ``:`` and may be group names,
  host names, globs, or ranges; ``!term`` excludes and ``&term``
  intersects.
- ``filter_hosts`` applies the command-line ``--limit`` filter:
  exact names, globs, ``!`` exclusions and ``@group`` names.
"""

import fnmatch
import re
from typing import TYPE_CHECKING, Any, Set

from .exceptions import ConfigParseError, UnknownGroupError

if TYPE_CHECKING:
    from .inventory import Inventory
    from .types import HostConfig

GLOB_CHARS = ("*", "?")


def split_pattern(pattern: str) -> list[str]:
    """Split a host pattern on ``,`` and on ``:`` outside of brackets.

    Example:
        >>> split_pattern("webservers:&staging:!web[1:2]")
        ['webservers', '&staging', '!web[1:2]']
    """
    terms: list[str] = []
    current: list[str] = []
    depth = 0
    for char in pattern:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(0, depth - 1)
        if char in ",:" and depth == 0:
            terms.append("".join(current))
            current = []
        else:
            current.append(char)
    terms.append("".join(current))
    return [t.strip() for t in terms if t.strip()]


def _is_glob(term: str) -> bool:
    return any(c in term for c in GLOB_CHARS) or bool(re.search(r"\[[^\]:]*\]", term))


def resolve_term(inventory: "Inventory", term: str, pattern: str | None = None) -> list["HostConfig"]:
    """Resolve one pattern term to hosts.

    Raises:
        UnknownGroupError: If the term is not a group, host, glob or range
    """
    from .inventory import ALL_GROUP, expand_host_pattern

    if term in ("all", "*"):
        return list(inventory.hosts.values())
    if term in inventory.groups:
        return inventory.group_hosts(term)
    if term in inventory.hosts:
        return [inventory.hosts[term]]

    if "[" in term and ":" in term:
        try:
            names = expand_host_pattern(term)
        except ConfigParseError as e:
            raise UnknownGroupError(term, pattern) from e
        missing = [n for n in names if n not in inventory.hosts]
        if missing:
            raise UnknownGroupError(missing[0], pattern)
        return [inventory.hosts[n] for n in names]

    if _is_glob(term):
        names: set[str] = {
            name for name in inventory.hosts if fnmatch.fnmatchcase(name, term)
        }
        for group_name in inventory.groups:
            if group_name != ALL_GROUP and fnmatch.fnmatchcase(group_name, term):
                names.update(h.name for h in inventory.group_hosts(group_name))
        return [host for name, host in inventory.hosts.items() if name in names]

    raise UnknownGroupError(term, pattern)


def select_hosts(inventory: "Inventory", pattern: str) -> list["HostConfig"]:
    """Resolve a host selector pattern against an inventory.

    Union terms are applied first, then intersections (``&``), then
    exclusions (``!``). The result keeps inventory order.

    Raises:
        UnknownGroupError: If any term names an unknown group or host

    Example:
        >>> select_hosts(inventory, "webservers:!web02")
        >>> select_hosts(inventory, "webservers:&production")
    """
    terms = split_pattern(pattern or "")
    if not terms:
        return []

    included: set[str] = set()
    intersections: list[set[str]] = []
    excluded: set[str] = set()

    for term in terms:
        if term.startswith("!"):
            excluded.update(h.name for h in resolve_term(inventory, term[1:], pattern))
        elif term.startswith("&"):
            intersections.append({h.name for h in resolve_term(inventory, term[1:], pattern)})
        else:
            included.update(h.name for h in resolve_term(inventory, term, pattern))

    for required in intersections:
        included &= required
    included -= excluded

    return [host for name, host in inventory.hosts.items() if name in included]


def parse_limit_pattern(pattern: str) -> tuple[Set[str], Set[str], Set[str], Set[str]]:
    """Parse a ``--limit`` pattern into include/exclude sets.

    Returns:
        Tuple of (include_exact, include_patterns, exclude_patterns, include_groups)
    """
    include_exact: Set[str] = set()
    include_patterns: Set[str] = set()
    exclude_patterns: Set[str] = set()
    include_groups: Set[str] = set()

    if not pattern:
        return include_exact, include_patterns, exclude_patterns, include_groups

    for part in pattern.split(","):
        part = part.strip()
        if not part:
            continue

        if part.startswith("!"):
            exclude_patterns.add(part[1:])
        elif part.startswith("@"):
            include_groups.add(part[1:])
        elif "*" in part or "?" in part or "[" in part:
            include_patterns.add(part)
        else:
            include_exact.add(part)

    return include_exact, include_patterns, exclude_patterns, include_groups


def match_host(
    hostname: str,
    include_exact: Set[str],
    include_patterns: Set[str],
    exclude_patterns: Set[str],
) -> bool:
    """Check if a hostname passes the limit criteria."""
    for pattern in exclude_patterns:
        if fnmatch.fnmatch(hostname, pattern):
            return False

    if not include_exact and not include_patterns:
        return True

    if hostname in include_exact:
        return True

    return any(fnmatch.fnmatch(hostname, pattern) for pattern in include_patterns)


def filter_hosts(
    all_hosts: dict[str, Any],
    limit_pattern: str | None,
    group_hosts: dict[str, Set[str]] | None = None,
) -> dict[str, Any]:
    """Filter hosts by a ``--limit`` pattern.

    Examples:
        filter_hosts(hosts, "web01,web02")
        filter_hosts(hosts, "web*,!web03")
        filter_hosts(hosts, "@webservers", group_hosts)
    """
    if not limit_pattern:
        return all_hosts

    include_exact, include_patterns, exclude_patterns, include_groups = parse_limit_pattern(
        limit_pattern
    )

    if include_groups:
        group_hosts = group_hosts or {}
        for group_name in include_groups:
            if group_name not in group_hosts:
                raise UnknownGroupError(group_name, limit_pattern)
            include_exact.update(group_hosts[group_name])

    return {
        hostname: host
        for hostname, host in all_hosts.items()
        if match_host(hostname, include_exact, include_patterns, exclude_patterns)
    }


def get_group_hosts_mapping(inventory: "Inventory") -> dict[str, Set[str]]:
    """Map every group name to the names of all its hosts (children included)."""
    return {
        group.name: {h.name for h in inventory.group_hosts(group.name)}
        for group in inventory.list_groups()
    }


def format_filter_summary(original_count: int, filtered_count: int, limit_pattern: str) -> str:
    """Format a summary of host filtering."""
    if filtered_count == original_count:
        return f"All {original_count} host(s) matched filter: {limit_pattern}"

    excluded = original_count - filtered_count
    return (
        f"Filter '{limit_pattern}': {filtered_count}/{original_count} hosts "
        f"({excluded} excluded)"
    )
