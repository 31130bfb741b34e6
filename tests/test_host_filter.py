"""Tests for host selection patterns and --limit filtering."""

import pytest

from taskweave.exceptions import UnknownGroupError
from taskweave.host_filter import (
    filter_hosts,
    format_filter_summary,
    get_group_hosts_mapping,
    parse_limit_pattern,
    select_hosts,
    split_pattern,
)
from taskweave.inventory import load_inventory_ini

INVENTORY = """
[webservers]
web[1:3]
lb

[databases]
db01
db02

[staging]
web3
db02

[production:children]
webservers
databases
"""


@pytest.fixture
def inventory():
    return load_inventory_ini(INVENTORY)


def names(hosts):
    return [h.name for h in hosts]


class TestSplitPattern:
    """Tests for pattern term splitting."""

    def test_colon_and_comma(self):
        """Test both separators split terms."""
        assert split_pattern("web,db:lb") == ["web", "db", "lb"]

    def test_ranges_are_not_split(self):
        """Test colons inside brackets are kept."""
        assert split_pattern("webservers:&staging:!web[1:2]") == ["webservers", "&staging", "!web[1:2]"]

    def test_empty(self):
        """Test an empty pattern has no terms."""
        assert split_pattern("") == []


class TestSelectHosts:
    """Tests for play host selectors."""

    def test_all(self, inventory):
        """Test 'all' selects every host in inventory order."""
        assert names(select_hosts(inventory, "all")) == ["web1", "web2", "web3", "lb", "db01", "db02"]

    def test_group(self, inventory):
        """Test a group name selects its hosts."""
        assert names(select_hosts(inventory, "databases")) == ["db01", "db02"]

    def test_child_groups(self, inventory):
        """Test a parent group includes its children's hosts."""
        assert len(select_hosts(inventory, "production")) == 6

    def test_union_keeps_inventory_order(self, inventory):
        """Test a union is returned in inventory order, without duplicates."""
        assert names(select_hosts(inventory, "db01,web1,db01")) == ["web1", "db01"]

    def test_intersection(self, inventory):
        """Test '&' intersects."""
        assert names(select_hosts(inventory, "webservers:&staging")) == ["web3"]

    def test_exclusion(self, inventory):
        """Test '!' excludes."""
        assert names(select_hosts(inventory, "production:!staging")) == ["web1", "web2", "lb", "db01"]

    def test_range(self, inventory):
        """Test range terms."""
        assert names(select_hosts(inventory, "web[1:2]")) == ["web1", "web2"]

    def test_glob(self, inventory):
        """Test glob terms match host names."""
        assert names(select_hosts(inventory, "db*")) == ["db01", "db02"]

    def test_unknown_group(self, inventory):
        """Test an unknown term raises UnknownGroupError."""
        with pytest.raises(UnknownGroupError, match="nope"):
            select_hosts(inventory, "webservers:nope")

    def test_range_with_unknown_host(self, inventory):
        """Test a range naming a missing host is an unknown term."""
        with pytest.raises(UnknownGroupError):
            select_hosts(inventory, "web[1:9]")

    def test_inventory_select(self, inventory):
        """Test Inventory.select delegates to select_hosts."""
        assert names(inventory.select("staging")) == ["web3", "db02"]


class TestLimit:
    """Tests for --limit filtering."""

    def test_parse_limit_pattern(self):
        """Test limit terms are classified."""
        exact, patterns, excludes, groups = parse_limit_pattern("web1,db*,!db02,@staging")

        assert exact == {"web1"}
        assert patterns == {"db*"}
        assert excludes == {"db02"}
        assert groups == {"staging"}

    def test_no_limit(self, inventory):
        """Test an empty limit keeps every host."""
        hosts = inventory.get_all_hosts()
        assert filter_hosts(hosts, None) == hosts

    def test_glob_and_exclusion(self, inventory):
        """Test globs combined with exclusions."""
        result = filter_hosts(inventory.get_all_hosts(), "web*,!web3")

        assert list(result) == ["web1", "web2"]

    def test_group_limit(self, inventory):
        """Test @group limits use the group mapping."""
        result = filter_hosts(inventory.get_all_hosts(), "@staging", get_group_hosts_mapping(inventory))

        assert list(result) == ["web3", "db02"]

    def test_unknown_group_limit(self, inventory):
        """Test an unknown @group raises."""
        with pytest.raises(UnknownGroupError):
            filter_hosts(inventory.get_all_hosts(), "@nope", get_group_hosts_mapping(inventory))

    def test_filter_summary(self):
        """Test the filter summary text."""
        assert format_filter_summary(6, 6, "all") == "All 6 host(s) matched filter: all"
        assert "2/6 hosts (4 excluded)" in format_filter_summary(6, 2, "web*")
