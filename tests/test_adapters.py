"""TSV/JSON adapters and the batch validator."""

import json

import pytest

from playreport.ingest import (
    PlaybackFormatError,
    detect_format,
    parse_json,
    parse_tsv,
    validate_records,
)
from playreport.models import PlaybackRecord

GOOD_LINE = "2024-12-10 16:08:30.6262924\tb5d6d30e2ac747a4823255108059cc19\tb7af0e5e546e09a6923d832b857abe2b\tMovie\tThe Best Christmas Pageant Ever\tTranscode (v:h264 a:eac3)\tJellyfin Web\tEdge Chromium\t47"
SENTINEL_LINE = "2024-12-11 18:11:59.4126171\te8a3ef7dd9e74f8cb104c21885d1322b\t56d8e5d26ea267a1a305ee811fbf31c2\tEpisode\tOnce Upon a Time - s01e08 - Desperate Souls\tDirectPlay\tJellyfin tvOS\tAppleTV\t-2147483648"


# --- TSV ---

def test_parse_tsv_drops_invalid_positions_and_blank_lines() -> None:
    text = "\n".join([GOOD_LINE, "", SENTINEL_LINE, "garbage line", ""])
    records = parse_tsv(text)
    assert len(records) == 1
    rec = records[0]
    assert rec.timestamp == "2024-12-10 16:08:30.6262924"
    assert rec.item_name == "The Best Christmas Pageant Ever"
    assert rec.play_method == "Transcode (v:h264 a:eac3)"
    assert rec.client_name == "Jellyfin Web"
    assert rec.device_name == "Edge Chromium"
    assert rec.duration_seconds == 47


def test_parse_tsv_crlf() -> None:
    records = parse_tsv(GOOD_LINE + "\r\n" + GOOD_LINE + "\r\n")
    assert len(records) == 2


# --- JSON ---

def test_parse_json_top_level_array_with_aliases() -> None:
    content = json.dumps([
        {
            "timestamp": "2024-12-10 16:08:30.6262924",
            "userId": "b5d6d30e2ac747a4823255108059cc19",
            "ItemId": "b7af0e5e546e09a6923d832b857abe2b",
            "Type": "Movie",
            "Name": "  Date Night ",
            "play_method": "DirectPlay",
            "Client": "Jellyfin Web",
            "device_name": "Firefox",
            "durationSeconds": "3343",
        },
    ])
    records = parse_json(content)
    assert len(records) == 1
    rec = records[0]
    assert rec.user_id == "b5d6d30e2ac747a4823255108059cc19"
    assert rec.item_id == "b7af0e5e546e09a6923d832b857abe2b"
    assert rec.item_type == "Movie"
    assert rec.item_name == "Date Night"
    assert rec.play_method == "DirectPlay"
    assert rec.client_name == "Jellyfin Web"
    assert rec.device_name == "Firefox"
    assert rec.duration_seconds == 3343


def test_parse_json_first_non_empty_alias_wins() -> None:
    content = json.dumps([{"date": "2024-12-10 16:08:30", "userId": "  ", "user_id": "abc", "Duration": 10}])
    rec = parse_json(content)[0]
    assert rec.timestamp == "2024-12-10 16:08:30"
    assert rec.user_id == "abc"
    assert rec.duration_seconds == 10


@pytest.mark.parametrize("key", ["sessions", "data"])
def test_parse_json_wrapped(key: str) -> None:
    content = json.dumps({key: [{"timestamp": "2024-12-10 16:08:30", "durationSeconds": "60"}]})
    records = parse_json(content)
    assert len(records) == 1
    assert records[0].duration_seconds == 60


def test_parse_json_unwraps_one_level_only() -> None:
    content = json.dumps({"data": {"data": [{"timestamp": "2024-12-10 16:08:30"}]}})
    with pytest.raises(PlaybackFormatError):
        parse_json(content)


def test_parse_json_empty_wrapper_gives_empty_batch() -> None:
    assert parse_json(json.dumps({"sessions": []})) == []


def test_parse_json_duration_rules() -> None:
    content = json.dumps([
        {"timestamp": "2024-12-10 16:08:30", "durationSeconds": "-5"},
        {"timestamp": "2024-12-10 16:08:31", "durationSeconds": "abc"},
        {"timestamp": "2024-12-10 16:08:32", "durationSeconds": "12.9"},
        {"timestamp": "2024-12-10 16:08:33"},
        {"timestamp": "2024-12-10 16:08:34", "duration_seconds": 90.7},
        "not an object",
        None,
    ])
    records = parse_json(content)
    assert [r.duration_seconds for r in records] == [12, 0, 90]


def test_parse_json_missing_timestamp_left_empty() -> None:
    records = parse_json(json.dumps([{"durationSeconds": "5"}]))
    assert records[0].timestamp == ""


@pytest.mark.parametrize("content", ["{not json", '"a string"', "42", '{"items": []}', "null"])
def test_parse_json_rejects_unrecognized(content: str) -> None:
    with pytest.raises(PlaybackFormatError):
        parse_json(content)


# --- Validation ---

def test_validate_rejects_non_list_and_empty() -> None:
    assert validate_records({"a": 1}) == "Data must be an array"
    assert validate_records([]) == "Data array is empty"


def test_validate_accepts_dotnet_and_iso_timestamps() -> None:
    records = [
        PlaybackRecord(timestamp="2024-12-10 16:08:30.6262924"),
        PlaybackRecord(timestamp="2024-12-10T16:08:30Z"),
    ]
    assert validate_records(records) is None


def test_validate_rejects_missing_or_bad_timestamp_in_sample() -> None:
    assert "Missing required field" in validate_records([PlaybackRecord(timestamp="")])
    msg = validate_records([PlaybackRecord(timestamp="2024-12-10 16:08:30"), PlaybackRecord(timestamp="yesterday")])
    assert msg == "Invalid timestamp format at index 1: yesterday"
    assert validate_records([42]) == "Invalid session object at index 0"


def test_validate_only_samples_first_five() -> None:
    good = [PlaybackRecord(timestamp="2024-12-10 16:08:30") for _ in range(5)]
    assert validate_records(good + [PlaybackRecord(timestamp="bad")]) is None


def test_detect_format() -> None:
    assert detect_format("export.json") == "json"
    assert detect_format("EXPORT.JSON") == "json"
    assert detect_format("upload.bin", "application/json") == "json"
    assert detect_format("export.tsv") == "tsv"
    assert detect_format(None) == "tsv"
