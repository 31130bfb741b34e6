"""Layered variable scopes with lazy Jinja2 interpolation.

A ``ScopeStack`` is an ordered list of named layers at fixed precedence::

    defaults < group < host < play < task < facts < loop < extra

Lookup walks from the most specific layer to the least specific. Within the
same precedence, later-added layers win. Values may reference other
variables with ``{{ name }}``; references are resolved on demand,
recursively, with cycle detection. Resolved values are memoized until the
stack's generation changes (a layer is added or a fact is set).

Stacks are derived with ``child()``: the child shares the parent's layers
read-only and adds its own, so a play stack can be shared by every host
worker while each host keeps a private facts layer.
"""

import itertools
import logging
import re
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Iterable, Mapping

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError, meta

from .exceptions import (
    CircularReferenceError,
    ConfigParseError,
    TemplateError,
    UndefinedVariableError,
)
from .secrets import NullSecretsProvider, SecretRef, SecretsProvider

logger = logging.getLogger(__name__)

SINGLE_EXPRESSION_RE = re.compile(r"^\s*\{\{(?P<expr>(?:(?!\{\{|\}\}).)*)\}\}\s*$", re.DOTALL)
UNDEFINED_NAME_RE = re.compile(r"'([^']+)' is undefined")


class Precedence(IntEnum):
    """Fixed precedence of variable layers; higher wins."""

    DEFAULTS = 0
    GROUP = 10
    HOST = 20
    PLAY = 30
    TASK = 40
    FACTS = 50
    LOOP = 55
    EXTRA = 60


class MergePolicy(str, Enum):
    """How a key defined in several layers combines.

    REPLACE: the most specific value wins outright.
    MERGE: mappings merge recursively and lists concatenate (least specific
    first); any other type falls back to REPLACE.
    """

    REPLACE = "replace"
    MERGE = "merge"


@dataclass(frozen=True)
class Scope:
    """One named layer of variables."""

    name: str
    precedence: Precedence
    values: Mapping[str, Any]


class FactStore:
    """Mutable runtime facts for one host, with a version counter."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.version = 0

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value
        self.version += 1

    def update(self, values: Mapping[str, Any]) -> None:
        self.values.update(values)
        self.version += 1


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "on", "1", "true", "y")
    return bool(value)


def create_environment() -> Environment:
    """Jinja2 environment used for every template and condition."""
    env = Environment(undefined=StrictUndefined, keep_trailing_newline=True)
    env.filters["bool"] = _to_bool
    return env


def _deep_merge(base: Any, override: Any) -> Any:
    if isinstance(base, dict) and isinstance(override, dict):
        merged = dict(base)
        for key, value in override.items():
            merged[key] = _deep_merge(merged[key], value) if key in merged else value
        return merged
    if isinstance(base, list) and isinstance(override, list):
        return base + override
    return override


class ScopeStack:
    """Ordered variable scopes with lazy, cycle-safe interpolation.

    Example:
        >>> stack = ScopeStack()
        >>> stack.push("group:web", Precedence.GROUP, {"port": 80, "url": "http://x:{{ port }}"})
        >>> stack.push("host:web01", Precedence.HOST, {"port": 8080})
        >>> stack.resolve("url")
        'http://x:8080'
    """

    _ids = itertools.count()

    def __init__(
        self,
        layers: Iterable[Scope] = (),
        merge_policy: MergePolicy = MergePolicy.REPLACE,
        secrets: SecretsProvider | None = None,
        facts: FactStore | None = None,
        environment: Environment | None = None,
    ) -> None:
        self._layers: list[Scope] = []
        self.merge_policy = MergePolicy(merge_policy)
        self.secrets = secrets or NullSecretsProvider()
        self.facts = facts
        self.environment = environment or create_environment()
        self._layer_generation = next(self._ids)
        self._cache: dict[str, Any] = {}
        self._cache_generation = self.generation
        for layer in layers:
            self._insert(layer)

    def _insert(self, layer: Scope) -> None:
        index = len(self._layers)
        while index > 0 and self._layers[index - 1].precedence > layer.precedence:
            index -= 1
        self._layers.insert(index, layer)
        self._layer_generation = next(self._ids)

    @property
    def generation(self) -> tuple[int, int]:
        """Changes whenever a layer is added or a fact is set."""
        return (self._layer_generation, self.facts.version if self.facts else 0)

    @property
    def layers(self) -> list[Scope]:
        """All layers, least specific first (facts excluded)."""
        return list(self._layers)

    def push(self, name: str, precedence: Precedence, values: Mapping[str, Any]) -> None:
        """Add a layer to this stack.

        Only for stacks not yet shared with other workers; use child()
        to derive a scope from a shared stack.
        """
        self._insert(Scope(name, Precedence(precedence), dict(values)))

    def child(
        self,
        name: str | None = None,
        precedence: Precedence = Precedence.TASK,
        values: Mapping[str, Any] | None = None,
        facts: FactStore | None = None,
    ) -> "ScopeStack":
        """Derive a stack sharing this one's layers, plus an optional new layer.

        Args:
            name: Name of the new layer (no layer added if None)
            precedence: Precedence of the new layer
            values: Variables of the new layer
            facts: Fact store for the child; defaults to this stack's store
        """
        stack = ScopeStack(
            self._layers,
            merge_policy=self.merge_policy,
            secrets=self.secrets,
            facts=facts if facts is not None else self.facts,
            environment=self.environment,
        )
        if name is not None:
            stack.push(name, precedence, values or {})
        return stack

    def set_fact(self, key: str, value: Any) -> None:
        """Set a runtime fact on this stack's fact store."""
        if self.facts is None:
            self.facts = FactStore()
        self.facts.set(key, value)

    def _ordered_layers(self) -> list[Mapping[str, Any]]:
        """Layer value mappings, least specific first, facts in place."""
        ordered: list[Mapping[str, Any]] = []
        facts_added = self.facts is None
        for layer in self._layers:
            if not facts_added and layer.precedence > Precedence.FACTS:
                ordered.append(self.facts.values)  # type: ignore[union-attr]
                facts_added = True
            ordered.append(layer.values)
        if not facts_added:
            ordered.append(self.facts.values)  # type: ignore[union-attr]
        return ordered

    def is_defined(self, key: str) -> bool:
        """Check whether a key is visible in any layer."""
        return any(key in values for values in self._ordered_layers())

    def keys(self) -> list[str]:
        """All visible keys, in first-definition order."""
        seen: dict[str, None] = {}
        for values in self._ordered_layers():
            for key in values:
                seen.setdefault(key, None)
        return list(seen)

    def lookup_raw(self, key: str) -> Any:
        """Return the uninterpolated value of a key.

        Raises:
            UndefinedVariableError: If the key is not visible
        """
        found = [values[key] for values in self._ordered_layers() if key in values]
        if not found:
            raise UndefinedVariableError(key)
        if self.merge_policy is MergePolicy.REPLACE:
            return found[-1]
        merged = found[0]
        for value in found[1:]:
            merged = _deep_merge(merged, value)
        return merged

    def resolve(self, key: str) -> Any:
        """Resolve a key to its fully interpolated value.

        Raises:
            UndefinedVariableError: If the key, or a key it references, is not visible
            CircularReferenceError: If interpolation loops back on itself
        """
        return self._resolve(key, ())

    def _resolve(self, key: str, chain: tuple[str, ...]) -> Any:
        if key in chain:
            raise CircularReferenceError(list(chain[chain.index(key):]) + [key])
        generation = self.generation
        if generation != self._cache_generation:
            self._cache.clear()
            self._cache_generation = generation
        if key in self._cache:
            return self._cache[key]

        value = self._render(self.lookup_raw(key), chain + (key,))
        self._cache[key] = value
        return value

    def render(self, value: Any) -> Any:
        """Interpolate every string inside a (possibly nested) value."""
        return self._render(value, ())

    def _render(self, value: Any, chain: tuple[str, ...]) -> Any:
        if isinstance(value, SecretRef):
            return self.secrets.resolve(value.ref)
        if isinstance(value, str):
            return self._render_string(value, chain)
        if isinstance(value, dict):
            return {k: self._render(v, chain) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render(v, chain) for v in value]
        if isinstance(value, tuple):
            return tuple(self._render(v, chain) for v in value)
        return value

    def _context_for(self, source: str, chain: tuple[str, ...]) -> dict[str, Any]:
        """Resolve the variables a template source refers to."""
        try:
            ast = self.environment.parse(source)
        except TemplateSyntaxError as e:
            raise ConfigParseError(f"Template syntax error: {e.message}", field=source) from e

        context: dict[str, Any] = {}
        for name in meta.find_undeclared_variables(ast):
            if self.is_defined(name):
                context[name] = self._resolve(name, chain)
        return context

    def _render_string(self, text: str, chain: tuple[str, ...]) -> Any:
        if "{{" not in text and "{%" not in text:
            return text

        context = self._context_for(text, chain)
        try:
            match = SINGLE_EXPRESSION_RE.match(text)
            if match:
                # A lone expression keeps its native type (lists, ints, dicts)
                expression = self.environment.compile_expression(
                    match.group("expr").strip(), undefined_to_none=False
                )
                result = expression(**context)
                if isinstance(result, Undefined):
                    str(result)
                return result
            return self.environment.from_string(text).render(**context)
        except UndefinedError as e:
            raise _undefined_from(e) from e
        except TemplateSyntaxError as e:
            raise ConfigParseError(f"Template syntax error: {e.message}", field=text) from e
        except Exception as e:
            raise TemplateError(f"Template error in '{text}': {e}", template=text) from e

    def evaluate(self, condition: Any) -> bool:
        """Evaluate a condition expression (``when``) to a boolean.

        Lists are combined with AND. Booleans pass through.

        Raises:
            UndefinedVariableError: If the condition uses an undefined variable
            TemplateError: If evaluating the condition raises (type mismatch, ...)
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition
        if isinstance(condition, (list, tuple)):
            return all(self.evaluate(c) for c in condition)
        if not isinstance(condition, str):
            return bool(condition)

        expr = condition.strip()
        match = SINGLE_EXPRESSION_RE.match(expr)
        if match:
            expr = match.group("expr").strip()

        context = self._context_for("{{ " + expr + " }}", ())
        try:
            expression = self.environment.compile_expression(expr, undefined_to_none=False)
            result = expression(**context)
            if isinstance(result, Undefined):
                str(result)
        except UndefinedError as e:
            raise _undefined_from(e) from e
        except TemplateSyntaxError as e:
            raise ConfigParseError(f"Invalid condition: {e.message}", field=condition) from e
        except Exception as e:
            raise TemplateError(f"Condition '{condition}' failed: {e}", template=condition) from e
        return bool(result)

    def as_dict(self, resolve: bool = True) -> dict[str, Any]:
        """All visible variables, interpolated when ``resolve`` is True."""
        if not resolve:
            return {key: self.lookup_raw(key) for key in self.keys()}
        return {key: self.resolve(key) for key in self.keys()}


def _undefined_from(error: UndefinedError) -> UndefinedVariableError:
    match = UNDEFINED_NAME_RE.search(str(error))
    name = match.group(1) if match else "?"
    return UndefinedVariableError(name, str(error))


def build_host_stack(
    base: ScopeStack,
    inventory: Any,
    host: Any,
    facts: FactStore | None = None,
) -> ScopeStack:
    """Derive a host's stack: group layers, host layer, private facts.

    ``base`` holds the run-wide layers (defaults, play, extra); it is shared
    read-only between hosts. Pass the host's ``facts`` store to carry facts
    over from earlier plays; a fresh store is used otherwise.
    """
    stack = base.child(facts=facts if facts is not None else FactStore())
    for group_name, group_vars in inventory.group_vars_layers(host):
        stack.push(f"group:{group_name}", Precedence.GROUP, group_vars)
    stack.push(f"host:{host.name}", Precedence.HOST, {**host.connection_vars(), **host.vars})
    return stack
