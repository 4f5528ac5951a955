"""Ingest workflow: tokenize (TSV/JSON), validate, rebuild sessions, store. One pass, input order."""

from __future__ import annotations

import json
import math
import re
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .log import get_logger
from .models import (
    ImportAudit,
    ImportErrorRecord,
    ImportFormat,
    ImportInput,
    ImportResult,
    PlaybackRecord,
    PlaybackRow,
    SessionRecord,
)
from .normalize import (
    INT32_MIN,
    is_valid_hex32,
    normalize_position,
    parse_dotnet_timestamp,
    parse_episode_info,
    parse_fallback_timestamp,
    parse_play_method,
    resolve_timestamp,
    session_dedup_key,
)

logger = get_logger(__name__)

TSV_FIELD_COUNT = 9
VALIDATION_SAMPLE_SIZE = 5
MAX_REPORTED_ERRORS = 50
TICKS_PER_SECOND = 10_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class PlaybackFormatError(ValueError):
    """The payload as a whole has no recognizable structure; nothing is imported."""


class RowSkipped(Exception):
    """One record cannot become a session (bad timestamp, no duration). The batch continues."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ReferenceLookup(Protocol):
    def find_user(self, user_id: str) -> Optional[str]: ...

    def find_item(self, item_id: str) -> Optional[str]: ...


class SessionStore(ReferenceLookup, Protocol):
    def insert_session(self, session: SessionRecord) -> bool: ...


# --- TSV ---

def parse_tsv_line(line: str) -> PlaybackRow | None:
    """
    Tokenize one 9-column line:
    timestamp | userId | itemId | itemType | itemName | playMethod | client | deviceName | position

    Four fields are anchored at each end; whatever lies between is the item name,
    rejoined with tabs, so titles containing tabs survive intact.
    """
    trimmed = line.rstrip()
    if not trimmed:
        return None
    parts = trimmed.split("\t")
    if len(parts) < TSV_FIELD_COUNT:
        return None

    position_str = parts[-1].strip()
    device_name = parts[-2].strip()
    client = parts[-3].strip()
    play_method_raw = parts[-4].strip()

    timestamp_raw = parts[0].strip()
    user_id = parts[1].strip()
    item_id = parts[2].strip()
    item_type = parts[3].strip()

    item_name_raw = "\t".join(parts[4:-4])

    try:
        position_raw = float(position_str)
    except ValueError:
        position_raw = math.nan
    position_ok = math.isfinite(position_raw)
    position = normalize_position(position_raw if position_ok else INT32_MIN)

    return PlaybackRow(
        timestamp_raw=timestamp_raw,
        timestamp_ms=parse_dotnet_timestamp(timestamp_raw),
        user_id=user_id,
        item_id=item_id,
        item_type=item_type,
        item_name=item_name_raw.strip(),
        item_name_raw=item_name_raw,
        play_method_raw=play_method_raw,
        play=parse_play_method(play_method_raw),
        client=client,
        device_name=device_name,
        position_seconds=position.seconds,
        position_seconds_raw=position_raw if position_ok else 0.0,
        position_kind=position.kind,
    )


def parse_tsv(text: str) -> list[PlaybackRecord]:
    """Tokenize every line; drop blank/short lines and rows whose position is invalid."""
    records: list[PlaybackRecord] = []
    dropped = 0
    for line in text.split("\n"):
        row = parse_tsv_line(line)
        if row is None:
            continue
        if row.position_kind == "invalid":
            dropped += 1
            continue
        records.append(PlaybackRecord(
            timestamp=row.timestamp_raw,
            user_id=row.user_id,
            item_id=row.item_id,
            item_type=row.item_type,
            item_name=row.item_name,
            play_method=row.play_method_raw,
            client_name=row.client,
            device_name=row.device_name,
            duration_seconds=row.position_seconds,
        ))
    if dropped:
        logger.info(f"TSV: dropped {dropped} rows with unusable position")
    return records


# --- JSON ---

# Accepted key names per field, first non-empty string wins.
JSON_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "timestamp": ("timestamp", "date", "time"),
    "user_id": ("userId", "user_id", "UserId"),
    "item_id": ("itemId", "item_id", "ItemId"),
    "item_type": ("itemType", "item_type", "Type"),
    "item_name": ("itemName", "item_name", "Name"),
    "play_method": ("playMethod", "play_method", "PlayMethod"),
    "client_name": ("clientName", "client_name", "Client"),
    "device_name": ("deviceName", "device_name", "Device"),
}
DURATION_ALIASES = ("durationSeconds", "duration_seconds", "Duration")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def _get_value(record: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _parse_duration(record: dict) -> int | None:
    """Leading integer of the first duration alias present; 0 when absent; None when unparseable."""
    for key in DURATION_ALIASES:
        value = record.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value) if math.isfinite(value) else None
        if isinstance(value, str) and value.strip():
            m = _LEADING_INT.match(value)
            return int(m.group(1)) if m else None
    return 0


def _record_from_json(item: Any) -> PlaybackRecord | None:
    if not isinstance(item, dict):
        return None
    duration = _parse_duration(item)
    if duration is None or duration < 0:
        return None
    fields = {name: _get_value(item, keys) for name, keys in JSON_FIELD_ALIASES.items()}
    fields["timestamp"] = fields["timestamp"] or ""
    return PlaybackRecord(**fields, duration_seconds=duration)


def parse_json(content: str) -> list[PlaybackRecord]:
    """
    Accept a top-level array of records, or {"sessions": [...]} / {"data": [...]}.
    Records with a negative or unparseable duration are dropped.
    Raises PlaybackFormatError for invalid JSON or any other shape.
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise PlaybackFormatError(f"Invalid JSON: {e.msg} (line {e.lineno})") from e

    if isinstance(data, dict):
        inner = data["sessions"] if "sessions" in data else data.get("data")
        if isinstance(inner, list):
            data = inner
    if not isinstance(data, list):
        raise PlaybackFormatError("Unrecognized JSON format")

    records = [r for r in (_record_from_json(item) for item in data) if r is not None]
    if len(records) < len(data):
        logger.info(f"JSON: dropped {len(data) - len(records)} records without a usable duration")
    return records


# --- Validation ---

def validate_records(records: Any) -> str | None:
    """
    Cheap structural check on the batch before anything is written.
    Only the first VALIDATION_SAMPLE_SIZE records are inspected; per-row checks happen later.
    Returns an error message, or None when the batch may proceed.
    """
    if not isinstance(records, list):
        return "Data must be an array"
    if not records:
        return "Data array is empty"
    for i, rec in enumerate(records[:VALIDATION_SAMPLE_SIZE]):
        if isinstance(rec, PlaybackRecord):
            timestamp = rec.timestamp
        elif isinstance(rec, dict):
            timestamp = rec.get("timestamp")
        else:
            return f"Invalid session object at index {i}"
        if not timestamp or not isinstance(timestamp, str):
            return f'Missing required field "timestamp" in session at index {i}'
        if parse_dotnet_timestamp(timestamp) is None and parse_fallback_timestamp(timestamp) is None:
            return f"Invalid timestamp format at index {i}: {timestamp}"
    return None


# --- Session reconstruction ---

def _resolve_reference(
    kind: str,
    ref_id: str | None,
    find: Callable[[str], Optional[str]],
    missing: list[str],
) -> tuple[str | None, str | None]:
    """Return (id_or_None, display_name_or_None); record a note when the id is unknown."""
    if not ref_id:
        return None, None
    name = find(ref_id)
    if name is None:
        missing.append(f"{kind} '{ref_id}' not found")
        return None, None
    return ref_id, name


def build_session(
    record: PlaybackRecord,
    server_id: int,
    lookup: ReferenceLookup,
    now: datetime | None = None,
) -> SessionRecord:
    """
    Turn one record into a storable session. Imported history is always completed playback.
    Unknown user/item ids are nulled and noted in raw_data.missing_references.
    Raises RowSkipped for an unparseable timestamp or a missing/non-positive duration.
    """
    if not record.timestamp:
        raise RowSkipped("Missing timestamp")
    start_time = resolve_timestamp(record.timestamp)
    if start_time is None:
        raise RowSkipped(f"Invalid timestamp: {record.timestamp}")
    duration = record.duration_seconds
    if duration is None or duration <= 0:
        raise RowSkipped("Missing or non-positive duration")

    missing: list[str] = []
    item_id, _ = _resolve_reference("itemId", record.item_id, lookup.find_item, missing)
    user_id, user_name = _resolve_reference("userId", record.user_id, lookup.find_user, missing)
    warnings = [
        f"{kind} '{raw}' is not a 32-character hex id"
        for kind, raw in (("userId", record.user_id), ("itemId", record.item_id))
        if raw and not is_valid_hex32(raw)
    ]
    if missing:
        logger.info(f"Dangling references nulled for '{record.item_name}': {'; '.join(missing)}")

    end_time = start_time + timedelta(seconds=duration)
    play_duration = int(round(duration))
    ticks = int(round(duration * TICKS_PER_SECOND))

    play = parse_play_method(record.play_method or "")
    video_direct = play.video == "direct"
    audio_direct = play.audio == "direct"

    series_name = None
    if (record.item_type or "").lower() == "episode" and record.item_name:
        series_name = parse_episode_info(record.item_name).series_name

    start_ms = (start_time - _EPOCH) // timedelta(milliseconds=1)
    now = now or datetime.now(timezone.utc)

    return SessionRecord(
        id=str(uuid.uuid4()),
        dedup_key=session_dedup_key(server_id, record.user_id, record.item_id, start_ms, play_duration),
        server_id=server_id,
        user_id=user_id,
        item_id=item_id,
        user_name=user_name or "Unknown User",
        user_server_id=user_id,
        item_name=record.item_name or "Unknown Item",
        series_name=series_name,
        client_name=record.client_name or "Unknown Client",
        device_name=record.device_name or "Unknown Device",
        play_method=record.play_method or "Unknown",
        play_duration=play_duration,
        start_time=start_time,
        end_time=end_time,
        last_activity_date=end_time,
        runtime_ticks=ticks,
        position_ticks=ticks,
        is_transcoded=play.mode == "Transcode",
        transcoding_is_video_direct=video_direct,
        transcoding_video_codec=None if video_direct else play.video,
        transcoding_is_audio_direct=audio_direct,
        transcoding_audio_codec=None if audio_direct else play.audio,
        raw_data=ImportAudit(
            original_data=record,
            imported_at=now,
            missing_references=missing,
            warnings=warnings,
        ),
        created_at=start_time,
        updated_at=now,
    )


def import_session(record: PlaybackRecord, server_id: int, storage: SessionStore) -> bool:
    """Build and insert one session. False when an identical session was already stored."""
    session = build_session(record, server_id, storage)
    return storage.insert_session(session)


# --- Orchestration ---

def detect_format(filename: str | None, content_type: str | None = None) -> ImportFormat:
    """JSON when the file name ends in .json or the upload says application/json; TSV otherwise."""
    if (filename or "").lower().endswith(".json") or (content_type or "").lower() == "application/json":
        return "json"
    return "tsv"


def _parse_payload(payload: ImportInput) -> list[PlaybackRecord]:
    if payload.format == "json":
        return parse_json(payload.content)
    return parse_tsv(payload.content)


def import_playback_impl(payload: ImportInput, storage: SessionStore) -> ImportResult:
    """
    Parse, validate and import a Playback Reporting export. Never raises.
    Structural problems reject the whole batch; row problems are counted and listed
    (at most MAX_REPORTED_ERRORS reasons) while the remaining rows continue.
    """
    logger.info(f"Starting Playback Reporting import ({payload.format}) for server {payload.server_id}")
    try:
        records = _parse_payload(payload)
    except PlaybackFormatError as e:
        logger.warning(f"Failed to parse file: {e}")
        return ImportResult(type="error", message=f"Failed to parse file: {e}")

    error = validate_records(records)
    if error:
        logger.warning(f"Validation failed: {error}")
        return ImportResult(type="error", message=error, total_count=len(records))

    result = ImportResult(type="success", message="", total_count=len(records))

    def _report(reason: str, record: PlaybackRecord) -> None:
        if len(result.errors) < MAX_REPORTED_ERRORS:
            result.errors.append(ImportErrorRecord(
                reason=reason,
                item_name=record.item_name,
                timestamp=record.timestamp or None,
            ))

    try:
        for record in records:
            try:
                if import_session(record, payload.server_id, storage):
                    result.imported_count += 1
                else:
                    result.skipped_count += 1
                    result.duplicate_count += 1
            except RowSkipped as e:
                logger.debug(f"Skipped row '{record.item_name}': {e.reason}")
                result.skipped_count += 1
                _report(e.reason, record)
            except sqlite3.Error as e:
                logger.warning(f"Storage error for row '{record.item_name}': {e}")
                result.error_count += 1
                _report(f"Storage error: {e}", record)
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to import row '{record.item_name}': {e!r}")
                result.error_count += 1
                _report(str(e) or type(e).__name__, record)
    except Exception as e:  # noqa: BLE001
        logger.exception("Import aborted")
        result.type = "error"
        result.message = f"Import failed: {e}"
        return result

    if result.imported_count == 0:
        result.type = "info"
        if result.duplicate_count == result.total_count:
            result.message = f"All {result.total_count} sessions were already imported"
        else:
            result.message = f"No sessions imported from Playback Reporting ({result.total_count} rows)"
    else:
        result.message = (
            f"Successfully imported {result.imported_count} of {result.total_count} "
            "sessions from Playback Reporting"
        )
    logger.info(
        f"Import finished: imported={result.imported_count} skipped={result.skipped_count} "
        f"duplicates={result.duplicate_count} errors={result.error_count} total={result.total_count}"
    )
    return result


def import_playback_file(
    path: str | Path,
    server_id: int,
    storage: SessionStore,
    content_type: str | None = None,
) -> ImportResult:
    """Read a whole export file, pick the adapter from its name, and import it."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8-sig")
        payload = ImportInput(
            server_id=server_id,
            content=text,
            format=detect_format(p.name, content_type),
            filename=p.name,
        )
    except (OSError, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Cannot read {p}: {e}")
        return ImportResult(type="error", message=f"Failed to read file: {e}")
    return import_playback_impl(payload, storage)
