"""
Event dispatcher.

The dispatcher is the single consumer of runtime notifications.  Producers
(the bus thread, the pad-added callback, signal handlers and the status API)
only ever call :meth:`EventDispatcher.post`, which is safe from any thread;
state decisions are taken on the asyncio loop in :meth:`EventDispatcher.handle`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import List, Optional

from .context import ReplayContext
from .errors import RuntimeFault
from .events import (
    Buffering,
    EndOfStream,
    ErrorMessage,
    LifecycleState,
    LinkOutcome,
    Notification,
    ShutdownRequested,
    SourceLinked,
    StateChanged,
    WarningMessage,
)

LOG = logging.getLogger(__name__)

_STOP = object()


class EventDispatcher:
    def __init__(self, context: ReplayContext) -> None:
        self.context = context
        self.state = LifecycleState.NULL
        self.requested_state = LifecycleState.NULL
        self.request_count = 0
        self.handled = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional["asyncio.Queue[object]"] = None
        self._pending: List[object] = []
        self._post_lock = threading.Lock()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        self._running = False

    # ------------------------------------------------------------------ public

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    @property
    def exit_code(self) -> int:
        return 1 if self.context.fault is not None else 0

    def post(self, notification: Notification) -> None:
        """Queue a notification; callable from any thread."""

        self._enqueue(notification)

    def request_shutdown(self, reason: str) -> None:
        self.post(ShutdownRequested(reason))

    def mark_started(self) -> None:
        """Record that the pipeline was asked to play during startup."""

        self.requested_state = LifecycleState.PLAYING

    async def run(self) -> None:
        """Consume notifications until shutdown."""

        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[object]" = asyncio.Queue()
        with self._post_lock:
            self._loop = loop
            self._queue = queue
            pending, self._pending = self._pending, []
        for item in pending:
            queue.put_nowait(item)

        self._running = True
        try:
            while not self._shut_down:
                item = await queue.get()
                if item is _STOP:
                    break
                try:
                    self.handle(item)  # type: ignore[arg-type]
                except Exception:  # pragma: no cover - keep consuming
                    LOG.exception("Failed to handle notification %r", item)
        finally:
            self._running = False
            with self._post_lock:
                self._loop = None
                self._queue = None
        LOG.debug("Dispatcher loop stopped after %d notifications", self.handled)

    def stop(self) -> None:
        """Wake the consumption loop so ``run`` returns."""

        self._enqueue(_STOP)

    # ---------------------------------------------------------- state machine

    def handle(self, notification: Notification) -> None:
        self.handled += 1
        if isinstance(notification, ErrorMessage):
            self._on_error(notification)
        elif isinstance(notification, WarningMessage):
            LOG.warning("Warning from element %s: %s", notification.source, notification.message)
            if notification.debug:
                LOG.debug("Warning debug information: %s", notification.debug)
        elif isinstance(notification, EndOfStream):
            LOG.info("End-Of-Stream reached")
            self._enter_terminal(LifecycleState.TERMINATED)
            self.shutdown()
        elif isinstance(notification, StateChanged):
            self._on_state_changed(notification)
        elif isinstance(notification, Buffering):
            self._on_buffering(notification)
        elif isinstance(notification, SourceLinked):
            self._on_source_linked(notification)
        elif isinstance(notification, ShutdownRequested):
            LOG.info("Shutdown requested (%s)", notification.reason)
            self._enter_terminal(LifecycleState.TERMINATED)
            self.shutdown()
        else:
            LOG.debug("Ignoring unknown notification %r", notification)

    def _on_error(self, message: ErrorMessage) -> None:
        LOG.error("Error received from element %s: %s", message.source, message.message)
        LOG.error("Debugging information: %s", message.debug or "none")
        if self.context.fault is None:
            self.context.fault = RuntimeFault(message.source, message.message, message.debug)
        self._enter_terminal(LifecycleState.ERROR)
        self.shutdown()

    def _on_state_changed(self, message: StateChanged) -> None:
        if not message.from_pipeline or message.new is None:
            return
        if self.state.is_terminal:
            return
        if message.new != self.state:
            LOG.info(
                "Pipeline state changed from %s to %s",
                (message.old or self.state).value,
                message.new.value,
            )
        self.state = message.new

    def _on_buffering(self, message: Buffering) -> None:
        self.context.window.observe_buffering(message.percent)
        if self.state.is_terminal:
            return
        target = LifecycleState.PAUSED if message.percent < 100 else LifecycleState.PLAYING
        if target == self.requested_state:
            return
        LOG.info("Buffering %d%%, requesting %s", message.percent, target.value)
        self._request(target)

    def _on_source_linked(self, message: SourceLinked) -> None:
        if message.outcome is LinkOutcome.FAILED:
            LOG.error("Source pad %s could not be linked: %s", message.pad_id, message.detail)
        else:
            LOG.debug("Source pad %s: %s %s", message.pad_id, message.outcome.value, message.detail)

    def _request(self, state: LifecycleState) -> None:
        pipeline = self.context.pipeline
        if pipeline is None:
            LOG.debug("No pipeline to move to %s", state.value)
            return
        self.requested_state = state
        self.request_count += 1
        pipeline.request_state(state)

    def _enter_terminal(self, state: LifecycleState) -> None:
        if not self.state.is_terminal:
            self.state = state

    # ---------------------------------------------------------------- shutdown

    def shutdown(self) -> None:
        """Release the server and the pipeline in order.  Safe to repeat."""

        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        server = self.context.server
        pipeline = self.context.pipeline

        if server is not None:
            try:
                server.close_admission()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to close server admission")

        if pipeline is not None:
            self.requested_state = LifecycleState.NULL
            try:
                pipeline.stop()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to release ingest pipeline")

        if server is not None:
            try:
                server.close()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to close replay server")

        self._enter_terminal(LifecycleState.TERMINATED)
        if self._running:
            self.stop()
        LOG.info("Shutdown complete")

    # ----------------------------------------------------------------- helpers

    def _enqueue(self, item: object) -> None:
        with self._post_lock:
            loop, queue = self._loop, self._queue
            if loop is None or queue is None:
                self._pending.append(item)
                return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            LOG.debug("Dropping %r: dispatcher loop is closed", item)
