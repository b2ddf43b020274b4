"""
Pydantic schemas for the status API.
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, validator


class CodecPairModel(BaseModel):
    backend: str
    decoder: str
    encoder: str


class BufferWindowModel(BaseModel):
    retention_ns: int
    capacity_bytes: int
    fill_bytes: int = 0
    buffer_count: int = 0
    oldest_ns: Optional[int] = None
    newest_ns: Optional[int] = None
    span_ns: int = 0
    buffering_percent: int = 0
    last_eviction: Optional[str] = None

    @validator("buffering_percent", pre=True)
    def _clamp_percent(cls, value: int) -> int:
        return max(0, min(100, int(value)))


class SessionModel(BaseModel):
    session_id: str
    address: str
    connected_at: float
    torn_down: bool = False


class StatusModel(BaseModel):
    state: str
    requested_state: str
    input: str
    stream_url: str
    codecs: CodecPairModel
    buffer: BufferWindowModel
    sessions: List[SessionModel] = Field(default_factory=list)
    fault: Optional[str] = None


class HealthModel(BaseModel):
    status: str
    state: str


class ShutdownAccepted(BaseModel):
    accepted: bool = True
    reason: str = "api"
