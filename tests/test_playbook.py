"""Tests for playbook parsing and validation."""

import pytest

from taskweave.exceptions import ConfigParseError
from taskweave.playbook import FREE_FORM_KEY, Play, load_playbook, parse_free_form, parse_playbook

SITE = """
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
    - name: Start service
      service: name=httpd state=started
      when: http_port == 80
      register: started
      retries: 3
      delay: 1
    - meta: flush_handlers
  handlers:
    - name: restart httpd
      service: name=httpd state=restarted
"""


def play(**overrides):
    data = {"hosts": "all", "tasks": [{"name": "ping", "ping": None}]}
    data.update(overrides)
    return data


class TestFreeForm:
    """Tests for the string argument shorthand."""

    def test_key_value(self):
        """Test key=value strings become mappings."""
        assert parse_free_form("name=httpd state=started") == {"name": "httpd", "state": "started"}

    def test_free_form(self):
        """Test other strings are kept as raw parameters."""
        assert parse_free_form("uptime -p") == {FREE_FORM_KEY: "uptime -p"}

    def test_quoted_values(self):
        """Test quoted values are kept together."""
        assert parse_free_form("msg='hello world'") == {"msg": "hello world"}


class TestParsePlaybook:
    """Tests for building Playbook objects from YAML data."""

    def test_site(self, tmp_path):
        """Test a complete play is parsed."""
        path = tmp_path / "site.yml"
        path.write_text(SITE)

        playbook = load_playbook(path)
        web = playbook.plays[0]

        assert playbook.source == str(path)
        assert web.name == "Configure web servers"
        assert web.hosts == "webservers"
        assert web.vars == {"http_port": 80}
        assert len(web.tasks) == 3
        assert [h.name for h in web.handlers] == ["restart httpd"]

    def test_task_fields(self, tmp_path):
        """Test task keywords are separated from module arguments."""
        path = tmp_path / "site.yml"
        path.write_text(SITE)
        install, start, flush = load_playbook(path).plays[0].tasks

        assert install.action == "package"
        assert install.args == {"name": "{{ item }}", "state": "present"}
        assert install.loop == ["httpd", "php"]
        assert install.notify == ("restart httpd",)
        assert start.args == {"name": "httpd", "state": "started"}
        assert start.when == "http_port == 80"
        assert start.register == "started"
        assert start.retries == 3
        assert start.delay == 1.0
        assert flush.is_flush
        assert not install.is_flush

    def test_default_task_name(self):
        """Test unnamed tasks are named after their action."""
        playbook = parse_playbook([play(tasks=[{"command": "uptime -p"}, {"ping": None}])])
        first, second = playbook.plays[0].tasks

        assert first.name == "command uptime -p"
        assert first.args == {FREE_FORM_KEY: "uptime -p"}
        assert second.name == "ping"

    def test_action_keyword(self):
        """Test the action keyword with inline arguments."""
        playbook = parse_playbook([play(tasks=[{"action": "shell echo hi", "args": {"chdir": "/tmp"}}])])
        task = playbook.plays[0].tasks[0]

        assert task.action == "shell"
        assert task.args == {FREE_FORM_KEY: "echo hi", "chdir": "/tmp"}

    def test_loop_control_and_fileglob(self):
        """Test fileglob loops and loop variable renaming."""
        playbook = parse_playbook([play(tasks=[{
            "copy": {"src": "{{ conf }}"},
            "with_fileglob": "files/*.conf",
            "loop_control": {"loop_var": "conf", "index_var": "idx"},
        }])])
        task = playbook.plays[0].tasks[0]

        assert task.fileglob == "files/*.conf"
        assert task.has_loop
        assert task.loop_var == "conf"
        assert task.index_var == "idx"

    def test_with_items_alias(self):
        """Test with_items is accepted as loop."""
        playbook = parse_playbook([play(tasks=[{"debug": {"msg": "{{ item }}"}, "with_items": [1, 2]}])])

        assert playbook.plays[0].tasks[0].loop == [1, 2]

    def test_single_play_mapping(self):
        """Test a single play mapping is accepted."""
        assert len(parse_playbook(play()).plays) == 1

    def test_vars_files(self, tmp_path):
        """Test vars_files are loaded relative to the playbook and vars win."""
        (tmp_path / "common.yml").write_text("region: eu\nsize: small\n")
        playbook = parse_playbook(
            [play(vars_files=["common.yml"], vars={"size": "large"})],
            base_dir=tmp_path,
        )

        assert playbook.plays[0].vars == {"region": "eu", "size": "large"}

    def test_required_flag(self):
        """Test plays are required unless marked otherwise."""
        playbook = parse_playbook([play(), play(required=False)])

        assert playbook.plays[0].required is True
        assert playbook.plays[1].required is False


class TestValidation:
    """Tests for malformed playbooks."""

    @pytest.mark.parametrize(
        "data,field",
        [
            ([play(hosts=None)], "plays[0].hosts"),
            ([play(gather_facts=True)], "plays[0].gather_facts"),
            ([play(tasks=[{"name": "nothing"}])], "plays[0].tasks[0]"),
            ([play(tasks=[{"ping": None, "command": "ls"}])], "plays[0].tasks[0]"),
            ([play(tasks=[{"ping": None, "notify": "missing"}])], "plays[0].tasks[0].notify"),
            ([play(tasks=[{"ping": None, "retries": -1}])], "plays[0].tasks[0].retries"),
            ([play(tasks=[{"ping": None, "loop": [1], "with_items": [2]}])], "plays[0].tasks[0]"),
            ([play(tasks=[{"ping": None, "loop": 5}])], "plays[0].tasks[0].loop"),
            ([play(tasks=[{"ping": None, "loop_control": {"label": "x"}}])], "plays[0].tasks[0].loop_control"),
            ([play(serial=0)], "plays[0].serial"),
            ([play(tasks="ping")], "plays[0].tasks"),
        ],
    )
    def test_invalid(self, data, field):
        """Test malformed input names the offending field."""
        with pytest.raises(ConfigParseError) as exc_info:
            parse_playbook(data, source="site.yml")

        assert exc_info.value.field == field
        assert exc_info.value.path == "site.yml"

    def test_duplicate_handler(self):
        """Test handler names must be unique."""
        handlers = [{"name": "restart", "ping": None}, {"name": "restart", "ping": None}]

        with pytest.raises(ConfigParseError, match="Duplicate handler"):
            parse_playbook([play(handlers=handlers)])

    def test_empty_playbook(self):
        """Test an empty playbook is rejected."""
        with pytest.raises(ConfigParseError):
            parse_playbook([])

    def test_invalid_yaml(self, tmp_path):
        """Test invalid YAML is a parse error naming the file."""
        path = tmp_path / "broken.yml"
        path.write_text("- hosts: all\n  tasks: [\n")

        with pytest.raises(ConfigParseError) as exc_info:
            load_playbook(path)
        assert exc_info.value.path == str(path)

    def test_missing_vars_file(self, tmp_path):
        """Test a missing vars file is a parse error."""
        with pytest.raises(ConfigParseError, match="Cannot load vars file"):
            parse_playbook([play(vars_files="nope.yml")], base_dir=tmp_path)


class TestPlay:
    """Tests for Play helpers."""

    def test_batch_size(self):
        """Test serial counts and percentages."""
        assert Play(name="p", hosts="all").batch_size(5) == 5
        assert Play(name="p", hosts="all", serial=2).batch_size(5) == 2
        assert Play(name="p", hosts="all", serial="50%").batch_size(4) == 2
        assert Play(name="p", hosts="all", serial="10%").batch_size(4) == 1

    def test_get_handler(self):
        """Test looking up handlers by name."""
        playbook = parse_playbook([play(handlers=[{"name": "restart", "ping": None}])])

        assert playbook.plays[0].get_handler("restart").name == "restart"
        assert playbook.plays[0].get_handler("other") is None
