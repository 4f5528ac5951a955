"""Normalization: timestamps, play methods, positions, episode titles, dedup hashing."""

from __future__ import annotations

import hashlib
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import EpisodeInfo, NormalizedPosition, PlayMethodParsed

# Upstream "position not recorded" marker (minimum signed 32-bit integer).
INT32_MIN = -2147483648

# Positions at or above 24h cannot be seconds; read them as milliseconds instead,
# and only keep the result when it is under 6h of continuous playback.
SECONDS_CEILING = 86400
MAX_PLAUSIBLE_SECONDS = 21600

_HEX32 = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)

# "Series Name - s01e05" with optional " - Episode Title" after it.
_EPISODE_PATTERN = re.compile(r"^(.+?)\s*-\s*s([0-9]+)e([0-9]+)", re.IGNORECASE)


# --- Timestamps ---

def parse_dotnet_timestamp(raw: str) -> int | None:
    """
    Parse "YYYY-MM-DD HH:mm:ss[.fffffff]" (0-7 fractional digits) as local time.
    The fraction is padded/truncated to 3 digits, so ".5" is 500ms and ".6262924" is 626ms.
    Returns epoch milliseconds, or None when the shape is wrong. Never raises.
    """
    s = (raw or "").strip()
    date_part, sep, time_part = s.partition(" ")
    if not sep:
        return None

    date_parts = date_part.split("-")
    if len(date_parts) != 3:
        return None

    time_only, _, frac = time_part.partition(".")
    time_parts = time_only.split(":")
    if len(time_parts) != 3:
        return None

    frac = frac.strip()
    if not all(p.isdigit() for p in (*date_parts, *time_parts)):
        return None
    if frac and not frac.isdigit():
        return None

    ms_str = (frac + "000")[:3]
    try:
        year, month, day = (int(p) for p in date_parts)
        hours, minutes, seconds = (int(p) for p in time_parts)
        ms = int(ms_str)
        base = datetime(year, month, day, hours, minutes, seconds)
        return int(base.timestamp()) * 1000 + ms
    except (ValueError, OverflowError, OSError):
        return None


_FALLBACK_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y",
    "%d %B %Y %H:%M:%S",
    "%d %B %Y",
    "%B %d, %Y",
)


def parse_fallback_timestamp(raw: str) -> datetime | None:
    """Generic date parse (ISO-8601 first, then common formats). Naive values are local time."""
    s = (raw or "").strip()
    if not s:
        return None
    iso = s[:-1] + "+00:00" if s.endswith(("Z", "z")) else s
    dt: datetime | None
    try:
        dt = datetime.fromisoformat(iso)
    except ValueError:
        dt = None
    if dt is None:
        for fmt in _FALLBACK_FORMATS:
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
    if dt is None:
        return None
    try:
        if dt.tzinfo is None:
            dt = dt.astimezone()
        return dt.astimezone(timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def resolve_timestamp(raw: str) -> datetime | None:
    """Dedicated .NET parser first, generic fallback second. Returns an aware UTC datetime."""
    ms = parse_dotnet_timestamp(raw)
    if ms is not None:
        try:
            return datetime.fromtimestamp(ms // 1000, tz=timezone.utc) + timedelta(milliseconds=ms % 1000)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_fallback_timestamp(raw)


# --- Play method ---

def parse_play_method(raw: str) -> PlayMethodParsed:
    """
    Classify a play-method string.
    "DirectPlay" / "DirectStream" exact; "Transcode (v:h264 a:eac3)" with codecs read independently;
    "Transcode" without a closed paren keeps no codecs; anything else is Other.
    """
    s = (raw or "").strip()

    if s == "DirectPlay":
        return PlayMethodParsed(mode="DirectPlay")
    if s == "DirectStream":
        return PlayMethodParsed(mode="DirectStream")

    if s.startswith("Transcode"):
        open_paren = s.find("(")
        close_paren = s.rfind(")")
        if open_paren >= 0 and close_paren > open_paren:
            video: str | None = None
            audio: str | None = None
            for part in s[open_paren + 1:close_paren].split(" "):
                if part.startswith("v:"):
                    video = part[2:]
                elif part.startswith("a:"):
                    audio = part[2:]
            return PlayMethodParsed(mode="Transcode", video=video, audio=audio)
        return PlayMethodParsed(mode="Transcode")

    return PlayMethodParsed(mode="Other")


# --- Position ---

def normalize_position(value: Any) -> NormalizedPosition:
    """
    Decide whether a raw position is seconds, milliseconds, or unusable.
    INT32_MIN and non-finite values are invalid; |v| < 24h is seconds; larger values are
    milliseconds when v/1000 lands in (0, 6h), otherwise invalid.
    """
    try:
        v = float(value)
    except (TypeError, ValueError, OverflowError):
        return NormalizedPosition(kind="invalid")
    if not math.isfinite(v) or v == INT32_MIN:
        return NormalizedPosition(kind="invalid")

    if abs(v) < SECONDS_CEILING:
        return NormalizedPosition(seconds=v, kind="seconds")

    as_seconds = v / 1000
    if 0 < as_seconds < MAX_PLAUSIBLE_SECONDS:
        return NormalizedPosition(seconds=as_seconds, kind="milliseconds")
    return NormalizedPosition(kind="invalid")


# --- Titles and identifiers ---

def parse_episode_info(item_name: str) -> EpisodeInfo:
    """Recover (series, season, episode) from "Series - sXXeYY - Title". Movies give all None."""
    m = _EPISODE_PATTERN.match(item_name or "")
    if not m:
        return EpisodeInfo()
    return EpisodeInfo(
        series_name=m.group(1).strip(),
        season_number=int(m.group(2)),
        episode_number=int(m.group(3)),
    )


def is_valid_hex32(value: str | None) -> bool:
    """True for a 32-character hex id (any case), the shape Jellyfin uses for users and items."""
    return bool(value) and _HEX32.match(value) is not None


def session_dedup_key(
    server_id: int,
    user_id: str | None,
    item_id: str | None,
    start_ms: int,
    play_duration: int,
) -> str:
    """Stable SHA256 of the fields that identify one playback; equal rows give equal keys."""
    blob = "|".join([
        str(server_id),
        (user_id or "").lower(),
        (item_id or "").lower(),
        str(start_ms),
        str(play_duration),
    ])
    return hashlib.sha256(blob.encode()).hexdigest()
