"""
Replay process entrypoint.

Resolves configuration, probes the media engine, builds the ingest graph and
the replay server, then hands control to the event dispatcher until a
shutdown is requested.  ``run()`` returns the process exit code: 0 after a
normal shutdown, 1 for configuration, engine or construction failures and
after a runtime fault.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional

from .capabilities import CapabilityProber, select_codecs
from .config import ReplayConfig, default_config_path, load_config_file
from .context import ReplayContext
from .diagnostics import run_checks
from .dispatcher import EventDispatcher
from .errors import ConfigurationError, EngineUnavailableError, ReplayError
from .pipeline import PipelineBuilder
from .runtime import GstEngine
from .server import ReplayServer
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)

BANNER_RULE = "=" * 40


class ReplayArgumentParser(argparse.ArgumentParser):
    """Report usage problems as :class:`ConfigurationError` instead of exiting."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise ConfigurationError(message)


def build_parser() -> ReplayArgumentParser:
    parser = ReplayArgumentParser(
        prog="instant-replay",
        description="Buffer a live RTSP stream and re-serve it as a seekable replay",
    )
    parser.add_argument("-i", "--input", help="input RTSP URL (required)")
    parser.add_argument("-b", "--buffer", type=int, help="buffer duration in seconds (default: 60)")
    parser.add_argument("-p", "--port", type=int, help="output RTSP port (default: 8554)")
    parser.add_argument("-m", "--mount", help="output mount point (default: /replay)")
    parser.add_argument("--no-hw", action="store_true", help="disable hardware acceleration")
    parser.add_argument("--gpu", type=int, help="GPU device id (default: 0)")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--latency", type=int, help="source jitter buffer latency in ms")
    parser.add_argument("--transport", choices=("tcp", "udp", "udp-mcast"), help="source transport")
    parser.add_argument("--allow-udp", action="store_true", help="also offer UDP to replay clients")
    parser.add_argument("--bitrate", type=int, help="replay encoder bitrate in kbps")
    parser.add_argument("--max-bytes", type=int, help="ring buffer byte bound")
    parser.add_argument("--store", help="path of the buffered H.264 store")
    parser.add_argument("--api-port", type=int, help="serve the status API on this port")
    parser.add_argument("--api-host", help="bind host for the status API")
    parser.add_argument("--log-level", help="logging level (default: info)")
    parser.add_argument("-v", "--verbose", action="store_true", help="shorthand for --log-level debug")
    parser.add_argument("--check", action="store_true", help="check the environment and exit")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ReplayConfig:
    """Layer command line flags over the optional YAML file."""

    path = args.config or default_config_path()
    config = load_config_file(path) if path else ReplayConfig()

    source: Dict[str, Any] = {}
    if args.input is not None:
        source["location"] = args.input
    if args.latency is not None:
        source["latency_ms"] = args.latency
    if args.transport is not None:
        source["transport"] = args.transport

    buffer: Dict[str, Any] = {}
    if args.buffer is not None:
        buffer["seconds"] = args.buffer
    if args.max_bytes is not None:
        buffer["max_bytes"] = args.max_bytes
    if args.store is not None:
        buffer["store_path"] = args.store

    server: Dict[str, Any] = {}
    if args.port is not None:
        server["port"] = args.port
    if args.mount is not None:
        server["mount_point"] = args.mount
    if args.allow_udp:
        server["allow_udp"] = True

    encoder: Dict[str, Any] = {}
    if args.bitrate is not None:
        encoder["bitrate_kbps"] = args.bitrate

    top: Dict[str, Any] = {
        "source": replace(config.source, **source),
        "buffer": replace(config.buffer, **buffer),
        "server": replace(config.server, **server),
        "encoder": replace(config.encoder, **encoder),
    }
    if args.no_hw:
        top["use_hardware_accel"] = False
    if args.gpu is not None:
        top["gpu_id"] = args.gpu
    if args.api_port is not None:
        top["api_port"] = args.api_port
    if args.api_host is not None:
        top["api_host"] = args.api_host
    if args.verbose:
        top["log_level"] = "debug"
    elif args.log_level is not None:
        top["log_level"] = args.log_level
    return replace(config, **top).validate()


def log_banner(title: str, lines: List[str]) -> None:
    LOG.info(BANNER_RULE)
    LOG.info(title)
    LOG.info(BANNER_RULE)
    for line in lines:
        LOG.info(line)
    LOG.info(BANNER_RULE)


def prepare_context(engine: GstEngine, config: ReplayConfig) -> ReplayContext:
    report = CapabilityProber(engine, gpu_id=config.gpu_id).probe()
    if report.plugins_missing:
        LOG.warning("Missing GStreamer plugins: %s", ", ".join(report.plugins_missing))
    codecs = select_codecs(report, use_hardware=config.use_hardware_accel, gpu_id=config.gpu_id)
    if not config.use_hardware_accel:
        LOG.info("Hardware acceleration disabled, using software codecs")
    LOG.info("Using decoder: %s", codecs.decoder)
    LOG.info("Using encoder: %s", codecs.encoder)
    return ReplayContext(config=config, report=report, codecs=codecs)


def _install_signal_handlers(dispatcher: EventDispatcher) -> Dict[int, Any]:
    previous: Dict[int, Any] = {}

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down...", signum)
        dispatcher.request_shutdown(signal.Signals(signum).name)

    for signame in ("SIGINT", "SIGTERM"):
        signum = getattr(signal, signame)
        try:
            previous[signum] = signal.signal(signum, _handle_signal)
        except ValueError:  # pragma: no cover - not on the main thread
            LOG.debug("Cannot install %s handler outside the main thread", signame)
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


async def serve(engine: GstEngine, context: ReplayContext) -> int:
    """
    Run the replay process inside an asyncio loop.

    Parameters
    ----------
    engine:
        Initialised engine binding.
    context:
        Context carrying the validated configuration and the selected codecs.
    """

    config = context.config
    dispatcher = EventDispatcher(context)
    previous_handlers = _install_signal_handlers(dispatcher)
    api_server = None
    api_task: Optional["asyncio.Task[None]"] = None

    try:
        try:
            context.pipeline = PipelineBuilder(engine, context, post=dispatcher.post).build()
            context.server = ReplayServer(engine, config.server, config.encoder).configure(
                config.server.mount_point,
                context.codecs,
                config.buffer.store_path,
            )
            engine.start_main_loop()
            context.server.attach()
            context.pipeline.watch(dispatcher.post)
            context.pipeline.start()
            dispatcher.mark_started()
        except ReplayError as exc:
            LOG.error("%s", exc)
            return 1

        log_banner(
            "Instant Replay Server Ready",
            [
                f"Stream URL: {config.stream_url}",
                f"Buffer: {config.buffer.seconds} seconds",
                f"Codecs: {context.codecs.decoder} -> {context.codecs.encoder}",
                "Press Ctrl+C to stop",
            ],
        )

        if config.api_port is not None:
            api_server, api_task = _start_api(context, dispatcher)

        await dispatcher.run()
        return dispatcher.exit_code
    finally:
        dispatcher.shutdown()
        if api_server is not None:
            api_server.should_exit = True
        if api_task is not None:
            try:
                await api_task
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Status API stopped with an error")
        engine.stop_main_loop()
        _restore_signal_handlers(previous_handlers)


def _start_api(context: ReplayContext, dispatcher: EventDispatcher) -> tuple:
    import uvicorn

    from .api import create_app

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info("Status API listening on http://%s:%s", context.config.api_host, context.config.api_port)
        try:
            yield
        finally:
            LOG.info("Status API shutting down")

    app = create_app(context, dispatcher, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=context.config.api_host,
        port=context.config.api_port,
        log_config=None,
        log_level=context.config.log_level,
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _on_done(task: "asyncio.Task[None]") -> None:
        if not dispatcher.is_shut_down:
            dispatcher.request_shutdown("status API stopped")

    task = asyncio.get_running_loop().create_task(server.serve())
    task.add_done_callback(_on_done)
    return server, task


def run(argv: Optional[List[str]] = None, *, engine: Optional[GstEngine] = None) -> int:
    try:
        args = parse_args(argv)
    except ConfigurationError as exc:
        configure_logging()
        LOG.error("%s", exc)
        build_parser().print_usage()
        return 1

    try:
        configure_logging(args.log_level or ("debug" if args.verbose else "info"))
    except ValueError as exc:
        configure_logging()
        LOG.error("%s", exc)
        return 1

    engine = engine or GstEngine()

    if args.check:
        try:
            engine.initialise()
        except EngineUnavailableError as exc:
            LOG.error("%s", exc)
            return 1
        return run_checks(engine).exit_code

    try:
        config = resolve_config(args)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    configure_logging(config.log_level)
    log_banner("GStreamer Instant Replay Server", config.banner_lines())

    try:
        engine.initialise()
        context = prepare_context(engine, config)
    except ReplayError as exc:
        LOG.error("%s", exc)
        return 1

    try:
        return asyncio.run(serve(engine, context))
    except KeyboardInterrupt:
        LOG.info("Replay interrupted by user.")
        return 0


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
