"""
GStreamer binding for the replay engine.

This is the only module that touches ``gi.repository``.  Everything else talks
to :class:`GstEngine` and sees plain Python values: lifecycle states,
notifications and link requests.  When PyGObject/GStreamer are not installed
the import is tolerated and :meth:`GstEngine.initialise` reports the problem
as :class:`~instant_replay.errors.EngineUnavailableError`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from ..errors import ConstructionError, EngineUnavailableError
from ..events import (
    Buffering,
    EndOfStream,
    ErrorMessage,
    LifecycleState,
    LinkRequest,
    Notification,
    StateChanged,
    WarningMessage,
)

LOG = logging.getLogger(__name__)

BUS_POLL_INTERVAL_NS = 100_000_000  # 100ms

_GST_INIT_LOCK = threading.RLock()
_GST_INITIALISED = False

try:  # pragma: no cover - availability depends on host environment
    import gi  # type: ignore

    gi.require_version("Gst", "1.0")
    from gi.repository import GLib, Gst  # type: ignore
except (ImportError, ValueError) as exc:  # pragma: no cover
    Gst = None  # type: ignore[assignment]
    GLib = None  # type: ignore[assignment]
    _GST_IMPORT_ERROR: Optional[BaseException] = exc
else:  # pragma: no cover - executed only when GStreamer is present
    _GST_IMPORT_ERROR = None

try:  # pragma: no cover - the RTSP server library ships separately
    gi.require_version("GstRtsp", "1.0")
    gi.require_version("GstRtspServer", "1.0")
    from gi.repository import GstRtsp, GstRtspServer  # type: ignore
except (ImportError, ValueError, NameError) as exc:  # pragma: no cover
    GstRtsp = None  # type: ignore[assignment]
    GstRtspServer = None  # type: ignore[assignment]
    _RTSP_IMPORT_ERROR: Optional[BaseException] = exc
else:  # pragma: no cover
    _RTSP_IMPORT_ERROR = None


def _ensure_gst_initialised() -> None:
    global _GST_INITIALISED
    with _GST_INIT_LOCK:
        if _GST_INITIALISED:
            return
        Gst.init(None)
        _GST_INITIALISED = True


def _to_gst_state(state: LifecycleState) -> "Gst.State":
    mapping = {
        LifecycleState.NULL: Gst.State.NULL,
        LifecycleState.READY: Gst.State.READY,
        LifecycleState.PAUSED: Gst.State.PAUSED,
        LifecycleState.PLAYING: Gst.State.PLAYING,
    }
    try:
        return mapping[state]
    except KeyError:
        raise ValueError(f"{state.value} is not an engine state") from None


def _from_gst_state(state: "Gst.State") -> Optional[LifecycleState]:
    mapping = {
        Gst.State.NULL: LifecycleState.NULL,
        Gst.State.READY: LifecycleState.READY,
        Gst.State.PAUSED: LifecycleState.PAUSED,
        Gst.State.PLAYING: LifecycleState.PLAYING,
    }
    return mapping.get(state)


def _source_name(message: "Gst.Message") -> str:
    src = message.src
    if src is None:
        return "unknown"
    try:
        return src.get_name()
    except Exception:  # pragma: no cover - defensive
        return str(src)


def translate_message(message: "Gst.Message", pipeline: "Gst.Pipeline") -> Optional[Notification]:
    """Convert a bus message into a dispatcher notification."""

    msg_type = message.type
    if msg_type == Gst.MessageType.ERROR:
        err, debug = message.parse_error()
        return ErrorMessage(source=_source_name(message), message=err.message, debug=debug)
    if msg_type == Gst.MessageType.WARNING:
        warn, debug = message.parse_warning()
        return WarningMessage(source=_source_name(message), message=warn.message, debug=debug)
    if msg_type == Gst.MessageType.EOS:
        return EndOfStream(source=_source_name(message))
    if msg_type == Gst.MessageType.STATE_CHANGED:
        old, new, pending = message.parse_state_changed()
        return StateChanged(
            source=_source_name(message),
            old=_from_gst_state(old),
            new=_from_gst_state(new),
            pending=_from_gst_state(pending),
            from_pipeline=message.src == pipeline,
        )
    if msg_type == Gst.MessageType.BUFFERING:
        return Buffering(percent=int(message.parse_buffering()))
    return None


class BusMonitor:
    """
    Pop messages from a pipeline bus on a daemon thread.

    Each message is translated and handed to ``post``; the callback is
    expected to be thread-safe.
    """

    def __init__(self, pipeline: "Gst.Pipeline", post: Callable[[Notification], None]) -> None:
        self._pipeline = pipeline
        self._post = post
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        bus = self._pipeline.get_bus()
        if not bus:
            LOG.warning("Pipeline bus is not available; skipping bus monitoring.")
            return

        self._stop.clear()
        mask = (
            Gst.MessageType.ERROR
            | Gst.MessageType.EOS
            | Gst.MessageType.WARNING
            | Gst.MessageType.BUFFERING
            | Gst.MessageType.STATE_CHANGED
        )

        def _loop() -> None:
            while not self._stop.is_set():
                message = bus.timed_pop_filtered(BUS_POLL_INTERVAL_NS, mask)
                if message is None:
                    continue
                notification = translate_message(message, self._pipeline)
                if notification is None:
                    continue
                try:
                    self._post(notification)
                except Exception:  # pragma: no cover - keep the bus drained
                    LOG.exception("Failed to forward bus message %s", notification)

        thread = threading.Thread(target=_loop, name="replay-gst-bus", daemon=True)
        thread.start()
        self._thread = thread

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and threading.current_thread() is not thread:
            thread.join(timeout=timeout)
        self._thread = None


class GstEngine:
    """Thin facade over the GStreamer and gst-rtsp-server Python bindings."""

    def __init__(self) -> None:
        self._main_loop: Optional["GLib.MainLoop"] = None
        self._loop_thread: Optional[threading.Thread] = None

    @property
    def is_available(self) -> bool:
        return Gst is not None

    def initialise(self) -> None:
        if Gst is None:
            raise EngineUnavailableError(
                "GStreamer runtime is not available. Install PyGObject and GStreamer 1.20+."
            ) from _GST_IMPORT_ERROR
        try:
            _ensure_gst_initialised()
        except Exception as exc:
            raise EngineUnavailableError(f"GStreamer failed to initialise: {exc}") from exc
        if Gst.Registry.get() is None:
            raise EngineUnavailableError("GStreamer plugin registry is unavailable.")
        LOG.info("Initialised %s", Gst.version_string())

    # ---------------------------------------------------------------- registry

    def has_feature(self, name: str) -> bool:
        feature = Gst.Registry.get().lookup_feature(name)
        return feature is not None

    def has_plugin(self, name: str) -> bool:
        plugin = Gst.Registry.get().find_plugin(name)
        return plugin is not None

    # ------------------------------------------------------------------- graph

    def new_pipeline(self, name: str) -> Optional["Gst.Pipeline"]:
        return Gst.Pipeline.new(name)

    def make_element(self, factory: str, name: Optional[str] = None) -> Optional["Gst.Element"]:
        return Gst.ElementFactory.make(factory, name)

    def link_pads(self, src_pad: "Gst.Pad", sink_pad: "Gst.Pad") -> bool:
        result = src_pad.link(sink_pad)
        if result != Gst.PadLinkReturn.OK:
            LOG.debug("Pad link %s -> %s returned %s", src_pad.get_name(), sink_pad.get_name(), result)
            return False
        return True

    def describe_pad(self, pad: "Gst.Pad") -> LinkRequest:
        caps = pad.get_current_caps() or pad.query_caps(None)
        media = encoding = None
        caps_str = ""
        if caps is not None and caps.get_size() > 0:
            caps_str = caps.to_string()
            structure = caps.get_structure(0)
            media = structure.get_string("media")
            encoding = structure.get_string("encoding-name")
        return LinkRequest(
            pad_id=pad.get_name(),
            media=media,
            encoding=encoding,
            caps=caps_str,
            pad=pad,
        )

    def set_state(self, element: "Gst.Element", state: LifecycleState) -> bool:
        result = element.set_state(_to_gst_state(state))
        return result != Gst.StateChangeReturn.FAILURE

    def add_buffer_probe(
        self, pad: "Gst.Pad", callback: Callable[[Optional[int], int], None]
    ) -> int:
        def _probe(_pad: "Gst.Pad", info: "Gst.PadProbeInfo") -> "Gst.PadProbeReturn":
            buffer = info.get_buffer()
            if buffer is not None:
                pts = buffer.pts if buffer.pts != Gst.CLOCK_TIME_NONE else None
                try:
                    callback(pts, buffer.get_size())
                except Exception:  # pragma: no cover - never break the stream
                    LOG.exception("Buffer probe callback failed.")
            return Gst.PadProbeReturn.OK

        return pad.add_probe(Gst.PadProbeType.BUFFER, _probe)

    def remove_probe(self, pad: "Gst.Pad", probe_id: int) -> None:
        pad.remove_probe(probe_id)

    def watch_bus(self, pipeline: "Gst.Pipeline", post: Callable[[Notification], None]) -> BusMonitor:
        monitor = BusMonitor(pipeline, post)
        monitor.start()
        return monitor

    # ------------------------------------------------------------- rtsp server

    def _require_rtsp_server(self) -> None:
        if GstRtspServer is None:
            raise ConstructionError(
                "gst-rtsp-server introspection data is not available "
                "(install gir1.2-gst-rtsp-server-1.0).",
                missing="GstRtspServer",
            ) from _RTSP_IMPORT_ERROR

    def new_rtsp_server(self) -> "GstRtspServer.RTSPServer":
        self._require_rtsp_server()
        return GstRtspServer.RTSPServer()

    def new_media_factory(self) -> "GstRtspServer.RTSPMediaFactory":
        self._require_rtsp_server()
        return GstRtspServer.RTSPMediaFactory()

    def lower_transports(self, mask: int) -> Any:
        return GstRtsp.RTSPLowerTrans(mask)

    def attach_server(self, server: "GstRtspServer.RTSPServer") -> int:
        return server.attach(None)

    def detach_server(self, source_id: int) -> None:
        GLib.source_remove(source_id)

    def client_address(self, client: Any) -> str:
        try:
            return client.get_connection().get_ip()
        except Exception:  # pragma: no cover - connection may already be gone
            return "unknown"

    # --------------------------------------------------------------- main loop

    def start_main_loop(self) -> None:
        """Iterate the default GLib context, which the RTSP server attaches to."""

        if self._loop_thread and self._loop_thread.is_alive():
            return
        loop = GLib.MainLoop()
        thread = threading.Thread(target=loop.run, name="replay-glib-loop", daemon=True)
        thread.start()
        self._main_loop = loop
        self._loop_thread = thread

    def stop_main_loop(self, timeout: float = 1.0) -> None:
        loop = self._main_loop
        if loop is None:
            return
        loop.quit()
        thread = self._loop_thread
        if thread and thread.is_alive() and threading.current_thread() is not thread:
            thread.join(timeout=timeout)
        self._main_loop = None
        self._loop_thread = None

