"""
FastAPI status surface for the replay engine.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import FastAPI

from ..context import ReplayContext
from ..dispatcher import EventDispatcher
from . import schemas

LOG = logging.getLogger(__name__)


def build_status(context: ReplayContext, dispatcher: EventDispatcher) -> schemas.StatusModel:
    described = context.describe()
    sessions = []
    if context.server is not None:
        sessions = [schemas.SessionModel(**session.to_dict()) for session in context.server.sessions.active()]
    return schemas.StatusModel(
        state=dispatcher.state.value,
        requested_state=dispatcher.requested_state.value,
        input=described["input"],
        stream_url=described["stream_url"],
        codecs=schemas.CodecPairModel(**described["codecs"]),
        buffer=schemas.BufferWindowModel(**described["buffer"]),
        sessions=sessions,
        fault=described["fault"],
    )


def create_app(
    context: ReplayContext,
    dispatcher: EventDispatcher,
    *,
    lifespan: Optional[Callable[..., object]] = None,
) -> FastAPI:
    app = FastAPI(title="Instant Replay API", lifespan=lifespan)

    @app.get("/healthz", response_model=schemas.HealthModel)
    async def healthz() -> schemas.HealthModel:
        status = "error" if context.fault is not None else "ok"
        return schemas.HealthModel(status=status, state=dispatcher.state.value)

    @app.get("/status", response_model=schemas.StatusModel)
    async def status() -> schemas.StatusModel:
        return build_status(context, dispatcher)

    @app.post("/shutdown", status_code=202, response_model=schemas.ShutdownAccepted)
    async def shutdown() -> schemas.ShutdownAccepted:
        LOG.info("Shutdown requested over the status API")
        dispatcher.request_shutdown("api")
        return schemas.ShutdownAccepted()

    return app
