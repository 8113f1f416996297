"""
Progress and completion notifications.

Notifications are one-way and best-effort: a consumer that has gone away
must never break a conversion, so delivery failures are logged and dropped.
"""

import logging
import sys
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Protocol

logger = logging.getLogger(__name__)

DEFAULT_MAILBOX_SIZE = 1000


@dataclass(frozen=True)
class ProgressEvent:
    """Sent after each page's extraction completes."""

    job_id: str
    current: int
    total: int
    page_index: int
    ok: bool = True
    type: str = field(default="progress", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CompletionEvent:
    """Sent once when a job finishes, successfully or not."""

    job_id: str
    success: bool
    filename: str | None = None
    error: str | None = None
    type: str = field(default="complete", init=False)

    def to_dict(self) -> dict:
        return asdict(self)


Event = ProgressEvent | CompletionEvent


class Notifier(Protocol):
    def notify(self, owner: str, event: Event) -> None: ...


def notify_safely(notifier: Notifier | None, owner: str, event: Event) -> None:
    """Fire-and-forget delivery; consumer failures are logged, never raised."""
    if notifier is None:
        return
    try:
        notifier.notify(owner, event)
    except Exception as e:
        logger.warning(f"Failed to send {event.type} update to {owner}: {e}")


class EventHub:
    """Per-owner mailboxes drained by polling consumers.

    Events for an owner without an open mailbox are dropped, as are the
    oldest events once a mailbox is full.
    """

    def __init__(self, maxlen: int = DEFAULT_MAILBOX_SIZE) -> None:
        self.maxlen = maxlen
        self._mailboxes: dict[str, deque] = {}
        self._lock = threading.Lock()

    def open(self, owner: str) -> None:
        with self._lock:
            self._mailboxes.setdefault(owner, deque(maxlen=self.maxlen))

    def close(self, owner: str) -> None:
        with self._lock:
            self._mailboxes.pop(owner, None)

    def notify(self, owner: str, event: Event) -> None:
        with self._lock:
            mailbox = self._mailboxes.get(owner)
            if mailbox is None:
                logger.debug(f"No consumer for {owner}, dropping {event.type} event")
                return
            mailbox.append(event)

    def drain(self, owner: str) -> list[Event]:
        with self._lock:
            mailbox = self._mailboxes.get(owner)
            if not mailbox:
                return []
            events = list(mailbox)
            mailbox.clear()
            return events


def format_time(seconds: float | None) -> str:
    """Format seconds as human-readable time."""
    if seconds is None:
        return "--:--"

    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


class TerminalNotifier:
    """Renders job progress as an updating terminal line.

    Usage:
        notifier = TerminalNotifier(desc="Extracting")
        pipeline = ConversionPipeline(config, settings, extract, deliver, notifier=notifier)
    """

    def __init__(self, desc: str = "Extracting", stream=None) -> None:
        self.desc = desc
        self._output = stream or sys.stderr
        self._is_tty = self._output.isatty()
        self._start_time = time.time()
        self._failed = 0
        self._last_line_len = 0

    def notify(self, owner: str, event: Event) -> None:
        if isinstance(event, ProgressEvent):
            self._render_progress(event)
        else:
            self._render_completion(event)

    def _render_progress(self, event: ProgressEvent) -> None:
        if not event.ok:
            self._failed += 1

        percent = 100.0 if event.total == 0 else event.current / event.total * 100
        bar_width = 20
        filled = int(bar_width * percent / 100)
        bar = "█" * filled + "░" * (bar_width - filled)

        elapsed = time.time() - self._start_time
        eta = elapsed / event.current * (event.total - event.current) if event.current else None

        line = (
            f"{self.desc}: [{bar}] {event.current}/{event.total} ({percent:.0f}%) "
            f"[{format_time(elapsed)}<{format_time(eta)}]"
        )
        if self._failed:
            line += f" | {self._failed} failed"

        if self._is_tty:
            clear = " " * max(0, self._last_line_len - len(line))
            self._output.write(f"\r{line}{clear}")
            self._last_line_len = len(line)
        elif event.current == 1 or event.current == event.total or event.current % max(1, event.total // 10) == 0:
            self._output.write(line + "\n")
        self._output.flush()

    def _render_completion(self, event: CompletionEvent) -> None:
        if self._is_tty and self._last_line_len:
            self._output.write("\n")

        elapsed = format_time(time.time() - self._start_time)
        if event.success:
            self._output.write(f"✓ {self.desc} complete: {event.filename} ({elapsed})\n")
        else:
            self._output.write(f"✗ {self.desc} failed: {event.error} ({elapsed})\n")
        self._output.flush()
