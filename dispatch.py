"""
Dispatch plumbing shared by the connection supervisor and the request and
channel handlers: ordered event streams, the requests that flow through
them, and the per-connection task group.
"""

import abc
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

import paramiko

funnel_logger = logging.getLogger("honeypy.ssh")

GLOBAL_CATEGORY = "global"


class EventStream:
    """Ordered sequence of protocol events consumed by exactly one task.

    Iteration blocks until the next event arrives and ends once the stream
    has been closed and drained. Events put after close are refused.
    """

    _CLOSED = object()

    def __init__(self):
        self._queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._queue.put(event)
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(self._CLOSED)

    def __iter__(self) -> Iterator[Any]:
        while True:
            event = self._queue.get()
            if event is self._CLOSED:
                return
            yield event


@dataclass(frozen=True)
class Request:
    """A global or channel request and the answer already sent for it.

    paramiko needs the answer on the transport thread, so it is decided
    when the request arrives; handlers only observe the outcome.
    """

    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    accepted: bool = False


class OpenedChannel:
    """A channel accepted on an established connection."""

    def __init__(self, kind: str, chanid: int, extra: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.chanid = chanid
        self.extra = extra or {}
        self.channel: Optional[paramiko.Channel] = None
        self.requests = EventStream()

    def close(self) -> None:
        self.requests.close()
        if self.channel is not None:
            self.channel.close()

    def __repr__(self):
        return f"OpenedChannel(kind={self.kind!r}, chanid={self.chanid})"


class RequestHandler(abc.ABC):
    @abc.abstractmethod
    def handle(self, remote_addr: str, category: str, requests: EventStream) -> None:
        """Consume a connection's request stream until it closes."""


class ChannelHandler(abc.ABC):
    @abc.abstractmethod
    def handle(self, remote_addr: str, channel: OpenedChannel) -> None:
        """Serve one opened channel."""


class TaskGroup:
    """Threads belonging to one connection.

    Each task runs inside an isolation boundary: an exception is logged
    with the connection's address and ends only that task.
    """

    def __init__(self, remote_addr: str):
        self.remote_addr = remote_addr
        self._threads = []
        self._lock = threading.Lock()

    def spawn(self, name: str, target: Callable, *args) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(name, target, args),
            name=f"{self.remote_addr}/{name}",
            daemon=True
        )
        with self._lock:
            self._threads.append(thread)
        thread.start()
        return thread

    def _run(self, name, target, args):
        try:
            target(*args)
        except Exception:
            funnel_logger.exception(
                "Task %s failed", name, extra={"client": self.remote_addr}
            )

    @property
    def alive(self) -> int:
        with self._lock:
            return sum(thread.is_alive() for thread in self._threads)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for every task; return False if some outlived the timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [t for t in self._threads if t.is_alive()]
            if not pending:
                return True
            for thread in pending:
                if thread is threading.current_thread():
                    continue
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                thread.join(remaining)
            # Tasks may have spawned siblings while we waited.
            with self._lock:
                if all(not t.is_alive() or t is threading.current_thread()
                       for t in self._threads):
                    return True
