"""
Isolated worker contexts.

Each worker is a separate process running one actor: commands arrive on an
inbox queue, statuses leave on an outbox queue, one command at a time.
"""
from __future__ import annotations

import multiprocessing as mp
import queue
from typing import Any, Callable, Iterator, Optional, Protocol

import structlog

from .protocol import ErrorStatus

log = structlog.get_logger(__name__)

_STOP = None


class Actor(Protocol):
    def handle(self, command: Any) -> Iterator[Any]: ...


def serve(actor_factory: Callable[[], Actor], inbox, outbox) -> None:
    """Message-receive loop; the actor (and its model handles) lives only here."""
    try:
        actor = actor_factory()
    except Exception as e:  # noqa: BLE001
        log.exception("Worker failed to start")
        outbox.put(ErrorStatus(id=None, message=f"Worker failed to start: {e}"))
        return

    while True:
        command = inbox.get()
        if command is _STOP:
            break
        try:
            for status in actor.handle(command):
                outbox.put(status)
        except Exception as e:  # noqa: BLE001 - never let the loop die silently
            log.exception("Unhandled worker error")
            cmd_id = getattr(command, "id", None) or getattr(command, "uuid", None)
            outbox.put(ErrorStatus(id=cmd_id, message=str(e)))


class WorkerHost:
    """
    Controlling-side handle for one worker process.

    terminate() is the only cancellation: whatever was in flight is lost and
    anything still queued in the outbox is dropped.
    """

    def __init__(self, actor_factory: Callable[[], Actor], name: str = "worker"):
        ctx = mp.get_context("spawn")
        self.name = name
        self._inbox = ctx.Queue()
        self._outbox = ctx.Queue()
        self._process = ctx.Process(
            target=serve,
            args=(actor_factory, self._inbox, self._outbox),
            name=name,
            daemon=True,
        )
        self._terminated = False

    def start(self) -> "WorkerHost":
        self._process.start()
        log.info("Worker started", worker=self.name, pid=self._process.pid)
        return self

    @property
    def alive(self) -> bool:
        return not self._terminated and self._process.is_alive()

    def send(self, command) -> None:
        if self._terminated:
            raise RuntimeError(f"Worker {self.name} has been terminated")
        self._inbox.put(command)

    def receive(self, timeout: Optional[float] = None):
        """Next status, or None when nothing arrives within `timeout` (or after terminate)."""
        if self._terminated:
            return None
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def stop(self, timeout: float = 5.0) -> None:
        """Graceful shutdown after the current command."""
        if self._terminated:
            return
        if self._process.pid is not None:
            self._inbox.put(_STOP)
            self._process.join(timeout)
            if self._process.is_alive():
                self._process.terminate()
        self._close()

    def terminate(self) -> None:
        if self._terminated:
            return
        if self._process.pid is not None:
            self._process.terminate()
            self._process.join(1.0)
        self._close()
        log.info("Worker terminated", worker=self.name)

    def _close(self) -> None:
        self._terminated = True
        for q in (self._inbox, self._outbox):
            q.cancel_join_thread()
            q.close()
