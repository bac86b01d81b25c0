"""Process-wide exit notification for long-running pipeline stages.

Stages that loop forever register a :class:`threading.Event`; when the
process receives SIGINT or SIGTERM every registered event is set so the
stages can leave their loops cleanly.
"""

from __future__ import annotations

import logging
import signal
import threading

_log = logging.getLogger(__name__)

# Re-entrant so that a signal handler running in the main thread while the
# main thread holds the lock cannot deadlock.
_lock = threading.RLock()
_events: list[threading.Event] = []


def register_exit_event(event: threading.Event) -> None:
    """Add an event to be set when the process is asked to exit."""
    with _lock:
        _events.append(event)


def registered_events() -> tuple[threading.Event, ...]:
    """Return the currently registered exit events."""
    with _lock:
        return tuple(_events)


def trigger_exit() -> None:
    """Set every registered exit event."""
    with _lock:
        events = list(_events)
    for event in events:
        event.set()


def _handle_signal(signum: int, _frame: object) -> None:
    _log.debug("received exit signal = %s", signum)
    trigger_exit()


def setup_elegant_exit() -> None:
    """Clear the registry and route SIGINT and SIGTERM to :func:`trigger_exit`."""
    _log.debug("entering setup_elegant_exit")
    with _lock:
        _events.clear()
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    _log.debug("registered exit signal handlers")