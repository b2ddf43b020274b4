"""
RTSP replay server.

Clients are served from the file the ingest graph writes: the stored H.264 is
re-parsed, decoded and re-encoded with the selected codec pair, then
payloaded for RTP.  The media is shared between clients and survives client
disconnects, so the buffered window stays available to the next viewer.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .capabilities import CodecPair, encoder_properties
from .config import LOWER_TRANSPORTS, EncoderSettings, ServerSettings
from .errors import ConstructionError, ProtocolFault

LOG = logging.getLogger(__name__)

PAYLOAD_NAME = "pay0"
PAYLOAD_TYPE = 96


class ServerEngine(Protocol):
    def new_rtsp_server(self) -> Any: ...

    def new_media_factory(self) -> Any: ...

    def lower_transports(self, mask: int) -> Any: ...

    def attach_server(self, server: Any) -> int: ...

    def detach_server(self, source_id: int) -> None: ...

    def client_address(self, client: Any) -> str: ...


def _format_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(ch.isspace() for ch in text):
        return f'"{text}"'
    return text


def _describe_element(factory: str, properties: Dict[str, object]) -> str:
    parts = [factory]
    parts.extend(f"{key}={_format_value(value)}" for key, value in properties.items())
    return " ".join(parts)


def build_launch(store_path: str, pair: CodecPair, encoder: EncoderSettings) -> str:
    """Launch description for the served media."""

    chain = [
        _describe_element("filesrc", {"location": store_path}),
        "h264parse",
        pair.decoder,
        _describe_element(pair.encoder, encoder_properties(pair, encoder)),
        "h264parse",
        _describe_element(
            "rtph264pay",
            {"name": PAYLOAD_NAME, "pt": PAYLOAD_TYPE, "config-interval": 1},
        ),
    ]
    return "( " + " ! ".join(chain) + " )"


def transport_mask(settings: ServerSettings) -> int:
    mask = LOWER_TRANSPORTS["tcp"]
    if settings.allow_udp:
        mask |= LOWER_TRANSPORTS["udp"]
    return mask


# ---- sessions


@dataclass
class ClientSession:
    session_id: str
    address: str
    connected_at: float = field(default_factory=time.time)
    torn_down: bool = False
    closed: bool = False

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "address": self.address,
            "connected_at": self.connected_at,
            "torn_down": self.torn_down,
        }


class SessionRegistry:
    """
    Client sessions known to the server.

    Faults are recorded per session; one client misbehaving never affects the
    media or the other sessions.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, ClientSession] = {}
        self._faults: List[ProtocolFault] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def open(self, address: str) -> ClientSession:
        with self._lock:
            session = ClientSession(session_id=f"client-{next(self._ids)}", address=address)
            self._sessions[session.session_id] = session
        LOG.info("Client %s connected from %s", session.session_id, address)
        return session

    def teardown(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.torn_down = True
        LOG.info("Client %s requested teardown", session_id)

    def close(self, session_id: str) -> Optional[ProtocolFault]:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            session.closed = True
            fault = None
            if not session.torn_down:
                fault = ProtocolFault(session_id, "connection closed without TEARDOWN")
                self._faults.append(fault)
        if fault is not None:
            LOG.warning("%s", fault)
        else:
            LOG.info("Client %s disconnected", session_id)
        return fault

    def active(self) -> List[ClientSession]:
        with self._lock:
            return list(self._sessions.values())

    @property
    def faults(self) -> List[ProtocolFault]:
        with self._lock:
            return list(self._faults)


# ---- server


class ServerHandle:
    """Mounted replay service."""

    def __init__(self, engine: ServerEngine, server: Any, factory: Any, mount_point: str) -> None:
        self._engine = engine
        self._server = server
        self._factory = factory
        self.mount_point = mount_point
        self.sessions = SessionRegistry()
        self.media_configured = 0
        self._source_id: Optional[int] = None
        self._admission_open = True
        self._closed = False
        self._lock = threading.Lock()

    @property
    def server(self) -> Any:
        return self._server

    @property
    def factory(self) -> Any:
        return self._factory

    @property
    def attached(self) -> bool:
        return self._source_id is not None

    @property
    def admission_open(self) -> bool:
        return self._admission_open

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self) -> None:
        with self._lock:
            if self._closed:
                raise ConstructionError("Replay server has already been closed")
            if self._source_id is not None:
                return
            source_id = self._engine.attach_server(self._server)
            if not source_id:
                raise ConstructionError(
                    f"Failed to attach RTSP server on port {self._server.get_service()}"
                )
            self._source_id = source_id
        LOG.info("RTSP server listening on port %s", self._server.get_service())

    def close_admission(self) -> None:
        """Unmount the factory; sessions already playing keep their media."""

        with self._lock:
            if not self._admission_open:
                return
            self._admission_open = False
            mounts = self._server.get_mount_points()
        if mounts is not None:
            mounts.remove_factory(self.mount_point)
        LOG.info("Stopped accepting new clients on %s", self.mount_point)

    def close(self) -> None:
        self.close_admission()
        with self._lock:
            if self._closed:
                return
            self._closed = True
            source_id, self._source_id = self._source_id, None
        if source_id is not None:
            try:
                self._engine.detach_server(source_id)
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to detach RTSP server")
        LOG.info("RTSP server closed")

    # ------------------------------------------------------------- callbacks

    def _on_media_configure(self, _factory: Any, media: Any) -> None:
        media.set_stop_on_disconnect(False)
        self.media_configured += 1
        LOG.debug("Configured shared replay media")

    def _on_client_connected(self, _server: Any, client: Any) -> None:
        try:
            session = self.sessions.open(self._engine.client_address(client))
            client.connect("teardown-request", self._on_teardown, session.session_id)
            client.connect("closed", self._on_client_closed, session.session_id)
        except Exception:  # pragma: no cover - keep the server loop alive
            LOG.exception("Failed to track new client")

    def _on_teardown(self, _client: Any, _ctx: Any, session_id: str) -> None:
        self.sessions.teardown(session_id)

    def _on_client_closed(self, _client: Any, session_id: str) -> None:
        self.sessions.close(session_id)


class ReplayServer:
    """Build the RTSP service that serves the buffered stream."""

    def __init__(
        self,
        engine: ServerEngine,
        settings: ServerSettings,
        encoder: Optional[EncoderSettings] = None,
    ) -> None:
        self._engine = engine
        self._settings = settings
        self._encoder = encoder or EncoderSettings()

    def configure(self, mount_point: str, codec_pair: CodecPair, buffer_source: str) -> ServerHandle:
        settings = self._settings
        server = self._engine.new_rtsp_server()
        server.set_service(str(settings.port))
        server.set_address(settings.address)

        launch = build_launch(buffer_source, codec_pair, self._encoder)
        LOG.debug("Replay media launch: %s", launch)

        factory = self._engine.new_media_factory()
        factory.set_launch(launch)
        factory.set_shared(settings.shared)
        factory.set_enable_rtcp(settings.enable_rtcp)
        factory.set_protocols(self._engine.lower_transports(transport_mask(settings)))
        if settings.enable_seek:
            factory.set_eos_shutdown(False)

        handle = ServerHandle(self._engine, server, factory, mount_point)
        factory.connect("media-configure", handle._on_media_configure)
        server.connect("client-connected", handle._on_client_connected)

        mounts = server.get_mount_points()
        if mounts is None:
            raise ConstructionError("RTSP server has no mount points")
        mounts.add_factory(mount_point, factory)
        LOG.info(
            "Replay mounted at %s (%s -> %s, %s)",
            mount_point,
            codec_pair.decoder,
            codec_pair.encoder,
            "tcp+udp" if settings.allow_udp else "tcp",
        )
        return handle
