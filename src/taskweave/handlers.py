"""Handler notification and flushing for taskweave.

Tasks that report a change notify handlers by name. Notifications are
collected per host and flushed at the end of the host's task list (per
serial batch) or at an explicit ``meta: flush_handlers``. A flush runs each
pending handler once, in handler definition order, regardless of how often
or in which order it was notified.

A handler fires at most once per play per host: a notification for a
handler that already ran on that host is ignored.
"""

import logging
from collections import defaultdict
from typing import Sequence

from .exceptions import ConfigParseError
from .playbook import Task

logger = logging.getLogger(__name__)


class HandlerDispatcher:
    """Tracks pending and fired handlers for every host of one play.

    Example:
        >>> dispatcher = HandlerDispatcher(play.handlers)
        >>> dispatcher.notify("web01", "restart nginx")
        True
        >>> [h.name for h in dispatcher.flush("web01")]
        ['restart nginx']
    """

    def __init__(self, handlers: Sequence[Task]) -> None:
        self._handlers = list(handlers)
        self._order = {handler.name: index for index, handler in enumerate(self._handlers)}
        self._pending: dict[str, set[str]] = defaultdict(set)
        self._fired: dict[str, list[str]] = defaultdict(list)

    def notify(self, host: str, name: str) -> bool:
        """Record a notification for a host.

        Returns:
            True if the handler is now pending, False if the notification
            was ignored because the handler already fired on the host

        Raises:
            ConfigParseError: If no handler has that name
        """
        if name not in self._order:
            raise ConfigParseError(f"Unknown handler '{name}'", field="notify")
        if name in self._fired[host]:
            logger.debug(f"Handler '{name}' already ran on {host}, ignoring notification")
            return False
        self._pending[host].add(name)
        return True

    def has_pending(self, host: str) -> bool:
        return bool(self._pending.get(host))

    def pending(self, host: str) -> list[str]:
        """Names of the handlers pending for a host, in definition order."""
        return sorted(self._pending.get(host, ()), key=self._order.__getitem__)

    def next_handler(self, host: str) -> Task | None:
        """Pop the earliest-defined pending handler for a host and mark it fired.

        Handlers notified while a flush is in progress become pending and
        are returned by later calls in the same flush.
        """
        pending = self.pending(host)
        if not pending:
            return None
        name = pending[0]
        self._pending[host].discard(name)
        self._fired[host].append(name)
        return self._handlers[self._order[name]]

    def flush(self, host: str) -> list[Task]:
        """Pop every handler pending for a host, in definition order."""
        handlers = []
        while (handler := self.next_handler(host)) is not None:
            handlers.append(handler)
        return handlers

    def discard(self, host: str) -> list[str]:
        """Drop a host's pending notifications (the host failed).

        Returns:
            Names of the handlers that will not run
        """
        dropped = self.pending(host)
        self._pending.pop(host, None)
        if dropped:
            logger.debug(f"Discarding pending handlers on {host}: {', '.join(dropped)}")
        return dropped

    def fired(self, host: str) -> list[str]:
        """Names of the handlers that ran on a host, in firing order."""
        return list(self._fired.get(host, ()))
