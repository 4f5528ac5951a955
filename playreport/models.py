"""Pydantic models for playreport: parsed rows, session entity, import input/output."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


PlayMode = Literal["DirectPlay", "DirectStream", "Transcode", "Other"]
PositionKind = Literal["seconds", "milliseconds", "invalid"]
ImportFormat = Literal["tsv", "json"]


# --- Field-level parse results ---

class PlayMethodParsed(BaseModel):
    mode: PlayMode
    video: Optional[str] = None  # only for Transcode with a (v:...) annotation
    audio: Optional[str] = None  # only for Transcode with a (a:...) annotation


class NormalizedPosition(BaseModel):
    """Position with the unit it was read as; seconds is None when kind is invalid."""
    seconds: Optional[float] = None
    kind: PositionKind


class EpisodeInfo(BaseModel):
    series_name: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None

    @model_validator(mode="after")
    def _all_or_nothing(self) -> "EpisodeInfo":
        present = [
            self.series_name is not None,
            self.season_number is not None,
            self.episode_number is not None,
        ]
        if any(present) and not all(present):
            raise ValueError("series_name, season_number and episode_number must be set together")
        return self


class PlaybackRow(BaseModel):
    """One tokenized TSV line. Either fully populated or never built."""
    timestamp_raw: str
    timestamp_ms: Optional[int] = None
    user_id: str
    item_id: str
    item_type: str
    item_name: str
    item_name_raw: str  # untrimmed, keeps embedded tabs and trailing spaces
    play_method_raw: str
    play: PlayMethodParsed
    client: str
    device_name: str
    position_seconds: Optional[float] = None
    position_seconds_raw: float = 0.0
    position_kind: PositionKind


# --- Adapter output (common to TSV and JSON) ---

class PlaybackRecord(BaseModel):
    timestamp: str = ""
    user_id: Optional[str] = None
    item_id: Optional[str] = None
    item_type: Optional[str] = None
    item_name: Optional[str] = None
    play_method: Optional[str] = None
    client_name: Optional[str] = None
    device_name: Optional[str] = None
    duration_seconds: Optional[float] = None


# --- Session entity ---

class ImportAudit(BaseModel):
    """Audit block stored with every imported session (raw_data column)."""
    source: Literal["playback_reporting"] = "playback_reporting"
    original_data: PlaybackRecord
    imported_at: datetime
    missing_references: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)  # e.g. ids that are not 32-char hex


class SessionRecord(BaseModel):
    id: str
    dedup_key: str
    server_id: int
    user_id: Optional[str] = None  # null when the user is not in the store
    item_id: Optional[str] = None  # null when the item is not in the store
    user_name: str
    user_server_id: Optional[str] = None
    item_name: str
    series_name: Optional[str] = None
    client_name: str
    device_name: str
    play_method: str
    play_duration: int  # whole seconds
    start_time: datetime
    end_time: datetime
    last_activity_date: datetime
    runtime_ticks: int
    position_ticks: int
    percent_complete: float = 100.0
    completed: bool = True
    is_paused: bool = False
    is_muted: bool = False
    is_active: bool = False
    is_transcoded: bool = False
    transcoding_is_video_direct: bool = False
    transcoding_video_codec: Optional[str] = None
    transcoding_is_audio_direct: bool = False
    transcoding_audio_codec: Optional[str] = None
    raw_data: ImportAudit
    created_at: datetime
    updated_at: datetime


# --- Import input / output ---

class ImportInput(BaseModel):
    server_id: int
    content: str
    format: ImportFormat = "tsv"
    filename: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _content_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("file content is empty")
        return v


class ImportErrorRecord(BaseModel):
    reason: str
    item_name: Optional[str] = None
    timestamp: Optional[str] = None


class ImportResult(BaseModel):
    type: Literal["success", "error", "info"]
    message: str
    imported_count: int = 0
    total_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    duplicate_count: int = 0  # subset of skipped_count: rows already in the store
    errors: list[ImportErrorRecord] = Field(default_factory=list)

    def to_summary(self) -> dict[str, Any]:
        """Dump without empty error list, for compact tool output."""
        out = self.model_dump()
        if not out["errors"]:
            out.pop("errors")
        return out
