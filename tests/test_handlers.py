"""Tests for handler notification and flushing."""

import pytest

from taskweave.exceptions import ConfigParseError
from taskweave.handlers import HandlerDispatcher
from taskweave.playbook import Task


@pytest.fixture
def dispatcher():
    return HandlerDispatcher([
        Task(name="reload config", action="command"),
        Task(name="restart app", action="command"),
        Task(name="restart db", action="command"),
    ])


class TestHandlerDispatcher:
    """Tests for HandlerDispatcher."""

    def test_flush_in_definition_order(self, dispatcher):
        """Test handlers run in definition order, not notification order."""
        dispatcher.notify("web01", "restart db")
        dispatcher.notify("web01", "reload config")

        assert [h.name for h in dispatcher.flush("web01")] == ["reload config", "restart db"]

    def test_repeated_notifications_collapse(self, dispatcher):
        """Test a handler notified many times runs once."""
        for _ in range(5):
            dispatcher.notify("web01", "restart app")

        assert [h.name for h in dispatcher.flush("web01")] == ["restart app"]
        assert dispatcher.flush("web01") == []

    def test_hosts_are_independent(self, dispatcher):
        """Test notifications are tracked per host."""
        dispatcher.notify("web01", "restart app")

        assert dispatcher.has_pending("web01")
        assert not dispatcher.has_pending("web02")
        assert dispatcher.flush("web02") == []

    def test_fires_once_per_host(self, dispatcher):
        """Test a notification after the handler ran is ignored."""
        dispatcher.notify("web01", "restart app")
        dispatcher.flush("web01")

        assert dispatcher.notify("web01", "restart app") is False
        assert not dispatcher.has_pending("web01")
        assert dispatcher.fired("web01") == ["restart app"]

    def test_notify_during_flush(self, dispatcher):
        """Test a handler notified by an earlier handler runs in the same flush."""
        dispatcher.notify("web01", "reload config")

        first = dispatcher.next_handler("web01")
        dispatcher.notify("web01", "restart db")
        second = dispatcher.next_handler("web01")

        assert first.name == "reload config"
        assert second.name == "restart db"
        assert dispatcher.next_handler("web01") is None

    def test_unknown_handler(self, dispatcher):
        """Test notifying an unknown handler raises."""
        with pytest.raises(ConfigParseError, match="Unknown handler"):
            dispatcher.notify("web01", "nope")

    def test_discard(self, dispatcher):
        """Test discarding pending notifications of a failed host."""
        dispatcher.notify("web01", "restart db")
        dispatcher.notify("web01", "restart app")

        assert dispatcher.discard("web01") == ["restart app", "restart db"]
        assert dispatcher.flush("web01") == []
        assert dispatcher.fired("web01") == []

    def test_pending(self, dispatcher):
        """Test pending handler names are listed in definition order."""
        dispatcher.notify("web01", "restart db")
        dispatcher.notify("web01", "reload config")

        assert dispatcher.pending("web01") == ["reload config", "restart db"]
