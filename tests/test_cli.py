"""Test CLI functionality."""

import json
import logging

import pytest
from click.testing import CliRunner

from taskweave import __version__
from taskweave.cli import cli, parse_extra_vars, parse_key_value_args
from taskweave.exceptions import ConfigParseError

INVENTORY = """\
all:
  vars:
    region: eu
  children:
    webservers:
      hosts:
        web01:
          ansible_connection: local
          http_port: 8080
        web02:
          ansible_connection: local
    databases:
      hosts:
        db01:
          ansible_host: 10.0.0.3
          ansible_user: admin
"""

PASSING_PLAYBOOK = """\
- name: smoke test
  hosts: webservers
  tasks:
    - name: succeed
      command: "true"
    - name: say hello
      debug:
        msg: "hello {{ inventory_hostname }}"
"""

FAILING_PLAYBOOK = """\
- name: break web01
  hosts: webservers
  tasks:
    - name: fail on web01
      command: "false"
      when: inventory_hostname == 'web01'
    - name: after
      command: "true"
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI reconfigures root logging; put it back after each test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "hosts.yml").write_text(INVENTORY)
    (tmp_path / "ok.yml").write_text(PASSING_PLAYBOOK)
    (tmp_path / "fail.yml").write_text(FAILING_PLAYBOOK)
    return tmp_path


def test_cli_version():
    """Test CLI version output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_help():
    """Test CLI help output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "taskweave" in result.output
    assert "run" in result.output
    assert "inventory" in result.output
    assert "vars" in result.output


def test_cli_run_help():
    """Test CLI run command help output."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", "--help"])
    assert result.exit_code == 0
    assert "--inventory" in result.output
    assert "--forks" in result.output
    assert "--extra-vars" in result.output


def test_cli_run_missing_playbook_argument():
    """Test CLI error when no playbook is given."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run"])
    assert result.exit_code != 0


def test_cli_run_success(project):
    """Test a passing run exits 0 and prints the recap."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(project / "ok.yml"), "-i", str(project / "hosts.yml")])
    assert result.exit_code == 0, result.output
    assert "Play Recap" in result.output
    assert "web01" in result.output
    assert "db01" not in result.output


def test_cli_run_failure_exit_code(project):
    """Test a host failure exits 2 and lists the failure."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(project / "fail.yml"), "-i", str(project / "hosts.yml")])
    assert result.exit_code == 2
    assert "Failures:" in result.output
    assert "fail on web01" in result.output


def test_cli_run_json(project):
    """Test JSON output is parseable and carries per-host results."""
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["run", str(project / "fail.yml"), "-i", str(project / "hosts.yml"), "--format", "json"],
    )
    assert result.exit_code == 2
    data = json.loads(result.stdout)
    assert data["success"] is False
    assert data["exit_code"] == 2
    assert data["hosts"] == {"web01": "failed", "web02": "changed"}
    assert data["stats"]["web02"]["ok"] == 1
    assert data["stats"]["web02"]["skipped"] == 1


def test_cli_run_limit(project):
    """Test --limit restricts the hosts of the run."""
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["run", str(project / "fail.yml"), "-i", str(project / "hosts.yml"), "-l", "web02", "--format", "json"],
    )
    assert result.exit_code == 0
    assert list(json.loads(result.stdout)["hosts"]) == ["web02"]


def test_cli_run_extra_vars(project):
    """Test -e values are visible to tasks."""
    (project / "echo.yml").write_text(
        "- hosts: web01\n"
        "  tasks:\n"
        "    - name: check version\n"
        "      command: test {{ version }} = 2.0\n"
    )
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["run", str(project / "echo.yml"), "-i", str(project / "hosts.yml"), "-e", "version=2.0"],
    )
    assert result.exit_code == 0, result.output


def test_cli_run_logs_configuration(project):
    """Test the effective run configuration is logged at debug level."""
    log_file = project / "run.log"
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["run", str(project / "ok.yml"), "-i", str(project / "hosts.yml"), "-f", "3", "-vv", "--log-file", str(log_file)],
    )
    assert result.exit_code == 0, result.output
    text = log_file.read_text()
    assert "Run configuration:" in text
    assert "Forks: 3" in text


def test_cli_run_localhost_default(tmp_path):
    """Test a run without inventory targets localhost."""
    playbook = tmp_path / "local.yml"
    playbook.write_text("- hosts: all\n  tasks:\n    - command: \"true\"\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(playbook), "--format", "json"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["hosts"] == {"localhost": "changed"}


def test_cli_run_parse_error(project):
    """Test a malformed playbook exits 4 without running anything."""
    (project / "bad.yml").write_text("- hosts: all\n  tasks:\n    - name: no action\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(project / "bad.yml"), "-i", str(project / "hosts.yml")])
    assert result.exit_code == 4
    assert "Error:" in result.output
    assert "No action specified" in result.output


def test_cli_run_unknown_group(project):
    """Test an unknown host group exits 4."""
    (project / "nogroup.yml").write_text("- hosts: caches\n  tasks:\n    - command: \"true\"\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(project / "nogroup.yml"), "-i", str(project / "hosts.yml")])
    assert result.exit_code == 4
    assert "caches" in result.output


def test_cli_run_missing_inventory(project):
    """Test an unreadable inventory exits 4."""
    runner = CliRunner()
    result = runner.invoke(cli, ["run", str(project / "ok.yml"), "-i", str(project / "missing.yml")])
    assert result.exit_code == 4
    assert "Cannot read inventory" in result.output


def test_cli_inventory_list(project):
    """Test listing groups and hosts."""
    runner = CliRunner()
    result = runner.invoke(cli, ["inventory", "list", "-i", str(project / "hosts.yml")])
    assert result.exit_code == 0
    assert "webservers (2 hosts):" in result.output
    assert "  - web01 (local)" in result.output
    assert "  - db01 (admin@10.0.0.3:22)" in result.output


def test_cli_inventory_list_json_limit(project):
    """Test JSON listing honors --limit."""
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["inventory", "list", "-i", str(project / "hosts.yml"), "--limit", "@webservers", "--format", "json"],
    )
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert sorted(data["hosts"]) == ["web01", "web02"]
    assert data["groups"]["databases"] == []
    assert data["hosts"]["web01"]["connection"] == "local"


def test_cli_inventory_validate(project):
    """Test inventory validation summary."""
    runner = CliRunner()
    result = runner.invoke(cli, ["inventory", "validate", "-i", str(project / "hosts.yml")])
    assert result.exit_code == 0
    assert "Loaded 3 host(s)" in result.output
    assert "All checks passed" in result.output


def test_cli_inventory_validate_cycle(tmp_path):
    """Test a group cycle is reported as a parse error."""
    inventory = tmp_path / "hosts.ini"
    inventory.write_text("[a:children]\nb\n\n[b:children]\na\n\n[a]\nhost1\n")
    runner = CliRunner()
    result = runner.invoke(cli, ["inventory", "validate", "-i", str(inventory)])
    assert result.exit_code == 4
    assert "Error:" in result.output


def test_cli_vars_show(project):
    """Test showing a host's variables."""
    runner = CliRunner()
    result = runner.invoke(cli, ["vars", "show", "web01", "-i", str(project / "hosts.yml")])
    assert result.exit_code == 0
    assert "Host: web01" in result.output
    assert "Groups: webservers" in result.output
    assert "http_port: 8080" in result.output
    assert "region: eu" in result.output


def test_cli_vars_show_json_extra_vars(project):
    """Test extra vars override inventory values in vars show."""
    runner = CliRunner()
    result = runner.invoke(
        cli,
        ["vars", "show", "web01", "-i", str(project / "hosts.yml"), "-e", "region=us", "--format", "json"],
    )
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert data["vars"]["region"] == "us"
    assert data["vars"]["http_port"] == 8080
    assert data["vars"]["inventory_hostname"] == "web01"


def test_cli_vars_show_unknown_host(project):
    """Test an unknown host lists the available ones."""
    runner = CliRunner()
    result = runner.invoke(cli, ["vars", "show", "web99", "-i", str(project / "hosts.yml")])
    assert result.exit_code != 0
    assert "Host 'web99' not found" in result.output
    assert "db01, web01, web02" in result.output


def test_parse_key_value_args_empty():
    """Test parsing empty args."""
    assert parse_key_value_args("") == {}
    assert parse_key_value_args(None) == {}


def test_parse_key_value_args_quoted_values():
    """Test parsing args with quoted values."""
    result = parse_key_value_args("cmd='echo hello world' path=/tmp/file")
    assert result == {"cmd": "echo hello world", "path": "/tmp/file"}


def test_parse_key_value_args_invalid():
    """Test a pair without '=' is rejected."""
    with pytest.raises(ConfigParseError, match="Expected key=value"):
        parse_key_value_args("version")


def test_parse_extra_vars_sources(tmp_path):
    """Test key=value, JSON and @file values, later ones winning."""
    vars_file = tmp_path / "vars.yml"
    vars_file.write_text("env: staging\nreplicas: 3\n")

    result = parse_extra_vars(["env=dev version=1.0", f"@{vars_file}", '{"version": 2}'])

    assert result == {"env": "staging", "version": 2, "replicas": 3}


def test_parse_extra_vars_bad_json():
    """Test malformed JSON extra vars are rejected."""
    with pytest.raises(ConfigParseError, match="Invalid JSON"):
        parse_extra_vars(["{not json"])


def test_parse_extra_vars_missing_file(tmp_path):
    """Test a missing @file is rejected."""
    with pytest.raises(ConfigParseError, match="Cannot read extra vars file"):
        parse_extra_vars([f"@{tmp_path / 'nope.yml'}"])
