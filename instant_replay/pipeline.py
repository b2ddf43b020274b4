"""
Ingest pipeline construction.

The ingest graph is::

    rtspsrc ~> rtph264depay -> h264parse -> queue2 (ring buffer) -> filesink

Everything right of ``rtspsrc`` is linked at construction time.  ``rtspsrc``
only exposes its source pads once the DESCRIBE/SETUP handshake has completed,
so that edge is completed later by :class:`DynamicLinkResolver` from the
``pad-added`` signal.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from .config import ReplayConfig
from .context import ReplayContext
from .errors import ConstructionError, NegotiationMismatch
from .events import LifecycleState, LinkOutcome, LinkRequest, Notification, SourceLinked
from .ringbuffer import queue2_properties

LOG = logging.getLogger(__name__)

PIPELINE_NAME = "input-pipeline"

# (factory, element name) in graph order.
INGEST_ELEMENTS: Tuple[Tuple[str, str], ...] = (
    ("rtspsrc", "source"),
    ("rtph264depay", "depay"),
    ("h264parse", "parse"),
    ("queue2", "ring-buffer"),
    ("filesink", "output"),
)

Post = Callable[[Notification], None]


class Engine(Protocol):
    def new_pipeline(self, name: str) -> Any: ...

    def make_element(self, factory: str, name: Optional[str] = None) -> Any: ...

    def link_pads(self, src_pad: Any, sink_pad: Any) -> bool: ...

    def describe_pad(self, pad: Any) -> LinkRequest: ...

    def set_state(self, element: Any, state: LifecycleState) -> bool: ...

    def add_buffer_probe(self, pad: Any, callback: Callable[[Optional[int], int], None]) -> int: ...

    def remove_probe(self, pad: Any, probe_id: int) -> None: ...

    def watch_bus(self, pipeline: Any, post: Post) -> Any: ...


class DynamicLinkResolver:
    """
    Bind announced source pads into the static graph.

    Only H.264 video pads are linked, and only once: a pad id that was already
    linked is never relinked and a second video pad is ignored while the
    target is fed.  Called from the engine's streaming thread.
    """

    def __init__(
        self,
        target_pad: Any,
        link: Callable[[Any, Any], bool],
        *,
        on_outcome: Optional[Post] = None,
    ) -> None:
        self._target_pad = target_pad
        self._link = link
        self._on_outcome = on_outcome
        self._linked: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def linked_pads(self) -> Set[str]:
        with self._lock:
            return set(self._linked)

    def resolve(self, request: LinkRequest) -> LinkOutcome:
        with self._lock:
            outcome, detail = self._resolve_locked(request)
        if self._on_outcome is not None:
            self._on_outcome(SourceLinked(pad_id=request.pad_id, outcome=outcome, detail=detail))
        return outcome

    def _resolve_locked(self, request: LinkRequest) -> Tuple[LinkOutcome, str]:
        if request.pad_id in self._linked:
            return LinkOutcome.ALREADY_LINKED, "pad is already linked"
        try:
            request.require()
        except NegotiationMismatch as exc:
            LOG.info("Ignoring source pad: %s", exc)
            return LinkOutcome.IGNORED, str(exc)
        if self._linked:
            detail = f"depayloader already fed by {', '.join(sorted(self._linked))}"
            LOG.info("Ignoring extra video pad %s: %s", request.pad_id, detail)
            return LinkOutcome.IGNORED, detail
        if not self._link(request.pad, self._target_pad):
            LOG.error("Failed to link source pad %s (%s) to depayloader", request.pad_id, request.caps)
            return LinkOutcome.FAILED, "link refused by the engine"
        self._linked.add(request.pad_id)
        LOG.info("Linked RTSP source pad %s to depayloader", request.pad_id)
        return LinkOutcome.LINKED, ""


class PipelineHandle:
    """
    Running ingest graph.

    The handle is owned by the builder until ``start`` is called; afterwards
    the dispatcher drives it through ``request_state`` and ``stop``.
    """

    def __init__(
        self,
        engine: Engine,
        pipeline: Any,
        elements: Dict[str, Any],
        resolver: DynamicLinkResolver,
    ) -> None:
        self._engine = engine
        self._pipeline = pipeline
        self._elements = dict(elements)
        self.resolver = resolver
        self._handlers: List[Tuple[Any, int]] = []
        self._probes: List[Tuple[Any, int]] = []
        self._bus_monitor: Any = None
        self._released = False
        self._lock = threading.RLock()

    @property
    def pipeline(self) -> Any:
        return self._pipeline

    @property
    def released(self) -> bool:
        return self._released

    def element(self, name: str) -> Any:
        return self._elements[name]

    def connect(self, element: Any, signal: str, callback: Callable[..., Any]) -> None:
        handler_id = element.connect(signal, callback)
        self._handlers.append((element, handler_id))

    def add_probe(self, pad: Any, callback: Callable[[Optional[int], int], None]) -> None:
        probe_id = self._engine.add_buffer_probe(pad, callback)
        self._probes.append((pad, probe_id))

    def watch(self, post: Post) -> None:
        if self._bus_monitor is None:
            self._bus_monitor = self._engine.watch_bus(self._pipeline, post)

    def start(self) -> None:
        if not self.request_state(LifecycleState.PLAYING):
            raise ConstructionError("Unable to set pipeline to playing state")
        LOG.info("Ingest pipeline started")

    def request_state(self, state: LifecycleState) -> bool:
        with self._lock:
            if self._released:
                LOG.debug("Ignoring %s request on a released pipeline", state.value)
                return False
            ok = self._engine.set_state(self._pipeline, state)
        if not ok:
            LOG.error("Failed to set ingest pipeline state to %s", state.value)
        return ok

    def stop(self) -> None:
        """Request NULL and release every owned resource.  Safe to repeat."""

        with self._lock:
            if self._released:
                return
            self._released = True
            pipeline = self._pipeline

            try:
                self._engine.set_state(pipeline, LifecycleState.NULL)
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to set pipeline to NULL during shutdown")

            if self._bus_monitor is not None:
                self._bus_monitor.stop()
                self._bus_monitor = None

            for element, handler_id in self._handlers:
                try:
                    element.disconnect(handler_id)
                except Exception:  # pragma: no cover - defensive
                    LOG.debug("Failed to disconnect handler on %s", element, exc_info=True)
            self._handlers.clear()

            for pad, probe_id in self._probes:
                try:
                    self._engine.remove_probe(pad, probe_id)
                except Exception:  # pragma: no cover - defensive
                    LOG.debug("Failed to remove buffer probe", exc_info=True)
            self._probes.clear()

            self._elements.clear()
            self._pipeline = None
        LOG.info("Ingest pipeline released")

    # ------------------------------------------------------------- callbacks

    def _on_pad_added(self, element: Any, pad: Any) -> None:
        try:
            request = self._engine.describe_pad(pad)
            LOG.info(
                "Received new pad '%s' from '%s' with caps: %s",
                request.pad_id,
                element.get_name(),
                request.caps or "unknown",
            )
            self.resolver.resolve(request)
        except Exception:  # pragma: no cover - never raise into the streaming thread
            LOG.exception("Failed to handle pad-added from %s", element)


class PipelineBuilder:
    """Assemble the ingest graph for a context."""

    def __init__(self, engine: Engine, context: ReplayContext, *, post: Optional[Post] = None) -> None:
        self._engine = engine
        self._context = context
        self._post = post

    def build(self) -> PipelineHandle:
        config = self._context.config

        pipeline = self._engine.new_pipeline(PIPELINE_NAME)
        if not pipeline:
            raise ConstructionError("Failed to create input pipeline")

        elements: Dict[str, Any] = {}
        missing: List[str] = []
        for factory, name in INGEST_ELEMENTS:
            element = self._engine.make_element(factory, name)
            if element is None:
                missing.append(factory)
            else:
                elements[name] = element
        if missing:
            raise ConstructionError(
                f"Failed to create pipeline elements: {', '.join(missing)}",
                missing=missing[0],
            )

        self._set_properties(elements["source"], self._source_properties(config))
        self._set_properties(elements["ring-buffer"], queue2_properties(config.buffer))
        # The store file grows for the life of the process; only the ring is bounded.
        self._set_properties(elements["output"], {"location": config.buffer.store_path})

        for element in elements.values():
            pipeline.add(element)

        static_chain = [elements[name] for name in ("depay", "parse", "ring-buffer", "output")]
        if not self._link_many(static_chain):
            self._remove_elements(pipeline, list(elements.values()))
            raise ConstructionError("Failed to link pipeline elements")

        resolver = DynamicLinkResolver(
            elements["depay"].get_static_pad("sink"),
            self._engine.link_pads,
            on_outcome=self._post,
        )
        handle = PipelineHandle(self._engine, pipeline, elements, resolver)
        handle.connect(elements["source"], "pad-added", handle._on_pad_added)

        parse_src = elements["parse"].get_static_pad("src")
        if parse_src is not None:
            handle.add_probe(parse_src, self._on_buffer)

        LOG.info("Input pipeline created successfully")
        return handle

    # ----------------------------------------------------------------- helpers

    @staticmethod
    def _source_properties(config: ReplayConfig) -> Dict[str, object]:
        source = config.source
        props: Dict[str, object] = {
            "location": source.location,
            "latency": int(source.latency_ms),
            "protocols": source.protocols,
            "buffer-mode": source.buffer_mode_value,
        }
        if source.has_credentials:
            props["user-id"] = source.user
            props["user-pw"] = source.password or ""
        return props

    def _on_buffer(self, pts: Optional[int], size: int) -> None:
        if pts is None:
            return
        self._context.window.append(pts, size)

    @staticmethod
    def _set_properties(element: Any, properties: Dict[str, object]) -> None:
        for key, value in properties.items():
            try:
                element.set_property(key, value)
            except Exception as exc:
                name = element.get_name() if hasattr(element, "get_name") else element
                raise ConstructionError(f"Failed to set '{key}' on {name}: {exc}") from exc

    @staticmethod
    def _link_many(elements: Sequence[Any]) -> bool:
        for upstream, downstream in zip(elements, elements[1:]):
            if not upstream.link(downstream):
                LOG.error("Failed to link %s -> %s", upstream.get_name(), downstream.get_name())
                return False
        return True

    @staticmethod
    def _remove_elements(pipeline: Any, elements: Sequence[Any]) -> None:
        for element in elements:
            try:
                pipeline.remove(element)
            except Exception:  # pragma: no cover - defensive
                LOG.debug("Failed to remove element during cleanup", exc_info=True)
