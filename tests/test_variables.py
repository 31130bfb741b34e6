"""Tests for layered variable scopes and interpolation."""

import pytest

from taskweave.exceptions import (
    CircularReferenceError,
    ConfigParseError,
    SecretResolutionError,
    TemplateError,
    UndefinedVariableError,
)
from taskweave.inventory import load_inventory_yaml
from taskweave.secrets import SecretRef, StaticSecretsProvider
from taskweave.variables import FactStore, MergePolicy, Precedence, ScopeStack, build_host_stack


class TestPrecedence:
    """Tests for layer precedence."""

    def test_more_specific_layer_wins(self):
        """Test host beats group regardless of push order."""
        stack = ScopeStack()
        stack.push("host:web01", Precedence.HOST, {"port": 8080})
        stack.push("group:web", Precedence.GROUP, {"port": 80})

        assert stack.resolve("port") == 8080

    def test_later_layer_wins_at_same_precedence(self):
        """Test document order breaks ties."""
        stack = ScopeStack()
        stack.push("group:a", Precedence.GROUP, {"color": "red"})
        stack.push("group:b", Precedence.GROUP, {"color": "blue"})

        assert stack.resolve("color") == "blue"

    def test_full_order(self):
        """Test extra > loop > facts > task > play > host > group > defaults."""
        stack = ScopeStack(facts=FactStore())
        for name, precedence in [
            ("defaults", Precedence.DEFAULTS),
            ("group", Precedence.GROUP),
            ("host", Precedence.HOST),
            ("play", Precedence.PLAY),
            ("task", Precedence.TASK),
        ]:
            stack.push(name, precedence, {"v": name, name: True})

        assert stack.resolve("v") == "task"
        stack.set_fact("v", "facts")
        assert stack.resolve("v") == "facts"
        loop = stack.child("loop", Precedence.LOOP, {"v": "loop"})
        assert loop.resolve("v") == "loop"
        extra = loop.child("extra", Precedence.EXTRA, {"v": "extra"})
        assert extra.resolve("v") == "extra"

    def test_merge_policy(self):
        """Test the merge policy combines mappings and lists."""
        stack = ScopeStack(merge_policy=MergePolicy.MERGE)
        stack.push("group", Precedence.GROUP, {"users": ["alice"], "opts": {"a": 1, "b": {"x": 1}}})
        stack.push("host", Precedence.HOST, {"users": ["bob"], "opts": {"b": {"y": 2}}})

        assert stack.resolve("users") == ["alice", "bob"]
        assert stack.resolve("opts") == {"a": 1, "b": {"x": 1, "y": 2}}

    def test_replace_policy(self):
        """Test the replace policy keeps only the most specific value."""
        stack = ScopeStack()
        stack.push("group", Precedence.GROUP, {"users": ["alice"]})
        stack.push("host", Precedence.HOST, {"users": ["bob"]})

        assert stack.resolve("users") == ["bob"]


class TestInterpolation:
    """Tests for lazy template resolution."""

    def test_reference_resolves_at_lookup_time(self):
        """Test a group value sees the host's override."""
        stack = ScopeStack()
        stack.push("group", Precedence.GROUP, {"port": 80, "url": "http://x:{{ port }}"})
        stack.push("host", Precedence.HOST, {"port": 8080})

        assert stack.resolve("url") == "http://x:8080"

    def test_single_expression_keeps_type(self):
        """Test a lone expression returns native values."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"ports": [80, 443], "first": "{{ ports[0] }}", "all": "{{ ports }}"})

        assert stack.resolve("all") == [80, 443]
        assert stack.resolve("first") == 80

    def test_nested_values_rendered(self):
        """Test strings inside containers are rendered."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"name": "app"})

        assert stack.render({"path": "/opt/{{ name }}", "list": ["{{ name }}-1"]}) == {
            "path": "/opt/app",
            "list": ["app-1"],
        }

    def test_undefined_variable(self):
        """Test an undefined reference names the variable."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"url": "http://{{ missing_host }}/"})

        with pytest.raises(UndefinedVariableError) as exc_info:
            stack.resolve("url")
        assert exc_info.value.name == "missing_host"

    def test_undefined_key(self):
        """Test looking up a missing key."""
        with pytest.raises(UndefinedVariableError):
            ScopeStack().resolve("nothing")

    def test_circular_reference(self):
        """Test interpolation cycles are detected with their chain."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"a": "{{ b }}", "b": "{{ c }}", "c": "{{ a }}"})

        with pytest.raises(CircularReferenceError) as exc_info:
            stack.resolve("a")
        assert exc_info.value.chain == ["a", "b", "c", "a"]

    def test_self_reference_is_circular(self):
        """Test a key referencing itself is circular."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"path": "{{ path }}/bin"})

        with pytest.raises(CircularReferenceError):
            stack.resolve("path")

    def test_template_syntax_error(self):
        """Test a malformed template is a parse error."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"bad": "{{ oops( }}"})

        with pytest.raises(ConfigParseError):
            stack.resolve("bad")

    def test_cache_invalidated_by_facts(self):
        """Test a resolved value changes when a fact it uses changes."""
        stack = ScopeStack(facts=FactStore())
        stack.push("play", Precedence.PLAY, {"greeting": "hello {{ who }}", "who": "world"})

        assert stack.resolve("greeting") == "hello world"
        stack.set_fact("who", "there")
        assert stack.resolve("greeting") == "hello there"

    def test_cache_keeps_current_generation_only(self):
        """Test repeated fact updates do not pile up cached values."""
        stack = ScopeStack(facts=FactStore())
        stack.push("play", Precedence.PLAY, {"label": "run {{ counter }}"})

        for n in range(50):
            stack.set_fact("counter", n)
            assert stack.resolve("label") == f"run {n}"

        assert len(stack._cache) <= 2

    def test_runtime_error_in_template(self):
        """Test errors raised while rendering become template errors."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"divisor": 0, "ratio": "{{ 10 // divisor }}"})

        with pytest.raises(TemplateError, match="10 // divisor"):
            stack.resolve("ratio")

    def test_secret_resolved_on_lookup(self):
        """Test secret references are resolved through the provider."""
        stack = ScopeStack(secrets=StaticSecretsProvider({"db#password": "pw"}))
        stack.push("host", Precedence.HOST, {"password": SecretRef("db#password"), "dsn": "db:{{ password }}"})

        assert stack.lookup_raw("password") == SecretRef("db#password")
        assert stack.resolve("dsn") == "db:pw"

    def test_unresolvable_secret(self):
        """Test a secret without a provider fails on use."""
        stack = ScopeStack()
        stack.push("host", Precedence.HOST, {"password": SecretRef("x")})

        with pytest.raises(SecretResolutionError):
            stack.resolve("password")


class TestEvaluate:
    """Tests for condition evaluation."""

    @pytest.fixture
    def stack(self):
        stack = ScopeStack()
        stack.push(
            "play", Precedence.PLAY, {"env": "prod", "count": 3, "flag": "yes", "mode": "enabled", "off": "no", "level": "80"}
        )
        return stack

    def test_expression(self, stack):
        """Test plain expressions."""
        assert stack.evaluate("env == 'prod'") is True
        assert stack.evaluate("count > 5") is False

    def test_braced_expression(self, stack):
        """Test expressions written with braces."""
        assert stack.evaluate("{{ count == 3 }}") is True

    def test_list_is_conjunction(self, stack):
        """Test a list of conditions must all hold."""
        assert stack.evaluate(["env == 'prod'", "count == 3"]) is True
        assert stack.evaluate(["env == 'prod'", "count == 4"]) is False

    def test_truthy_strings(self, stack):
        """Test any non-empty string is truthy."""
        assert stack.evaluate("flag") is True
        assert stack.evaluate("mode") is True
        assert stack.evaluate("off") is True
        assert stack.evaluate("''") is False

    def test_bool_filter(self, stack):
        """Test the bool filter reads yes/no style strings."""
        assert stack.evaluate("flag | bool") is True
        assert stack.evaluate("off | bool") is False
        assert stack.evaluate("mode | bool") is False

    def test_none_and_bool(self, stack):
        """Test missing conditions pass and booleans pass through."""
        assert stack.evaluate(None) is True
        assert stack.evaluate(False) is False

    def test_is_defined(self, stack):
        """Test undefined names can be tested with 'is defined'."""
        assert stack.evaluate("missing is defined") is False
        assert stack.evaluate("missing is not defined") is True

    def test_undefined_in_comparison(self, stack):
        """Test using an undefined name raises."""
        with pytest.raises(UndefinedVariableError):
            stack.evaluate("missing == 1")

    def test_type_error_in_comparison(self, stack):
        """Test comparing a string with a number raises a template error."""
        with pytest.raises(TemplateError, match="level > 5"):
            stack.evaluate("level > 5")


class TestChildStacks:
    """Tests for derived stacks."""

    def test_child_does_not_change_parent(self):
        """Test child layers are private to the child."""
        parent = ScopeStack()
        parent.push("play", Precedence.PLAY, {"a": 1})
        child = parent.child("task", Precedence.TASK, {"a": 2})

        assert child.resolve("a") == 2
        assert parent.resolve("a") == 1

    def test_child_shares_facts(self):
        """Test facts set through a child are visible to the parent."""
        parent = ScopeStack(facts=FactStore())
        child = parent.child("task", Precedence.TASK, {})
        child.set_fact("registered", 42)

        assert parent.resolve("registered") == 42

    def test_keys_and_as_dict(self):
        """Test listing visible variables."""
        stack = ScopeStack()
        stack.push("play", Precedence.PLAY, {"a": 1, "b": "{{ a }}"})

        assert stack.keys() == ["a", "b"]
        assert stack.as_dict() == {"a": 1, "b": 1}
        assert stack.as_dict(resolve=False) == {"a": 1, "b": "{{ a }}"}


class TestBuildHostStack:
    """Tests for per-host stacks built from an inventory."""

    def test_group_and_host_layers(self):
        """Test host stacks layer group vars, host vars and connection vars."""
        inventory = load_inventory_yaml({
            "all": {
                "vars": {"tier": "base", "ntp": "ntp.example.com"},
                "children": {
                    "web": {"hosts": {"web01": {"tier": "host"}, "web02": {}}, "vars": {"tier": "web"}},
                },
            }
        })
        base = ScopeStack()
        base.push("extra_vars", Precedence.EXTRA, {"ntp": "override"})

        web01 = build_host_stack(base, inventory, inventory.get_host("web01"))
        web02 = build_host_stack(base, inventory, inventory.get_host("web02"))

        assert web01.resolve("tier") == "host"
        assert web02.resolve("tier") == "web"
        assert web01.resolve("ntp") == "override"
        assert web01.resolve("inventory_hostname") == "web01"
        assert web01.resolve("group_names") == ["web"]

    def test_hosts_have_private_facts(self):
        """Test facts on one host are invisible to another."""
        inventory = load_inventory_yaml({"web": {"hosts": ["web01", "web02"]}})
        base = ScopeStack()
        web01 = build_host_stack(base, inventory, inventory.get_host("web01"))
        web02 = build_host_stack(base, inventory, inventory.get_host("web02"))

        web01.set_fact("deployed", True)

        assert web01.is_defined("deployed")
        assert not web02.is_defined("deployed")

    def test_shared_fact_store(self):
        """Test a fact store passed in carries facts into a new stack."""
        inventory = load_inventory_yaml({"web": {"hosts": ["web01"]}})
        host = inventory.get_host("web01")
        facts = FactStore()
        first = build_host_stack(ScopeStack(), inventory, host, facts)
        first.set_fact("release", "1.4")

        second = build_host_stack(ScopeStack(), inventory, host, facts)

        assert second.resolve("release") == "1.4"
