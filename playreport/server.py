"""MCP server: playreport.import_playback, reference seeding tools, and a read-only session resource."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP
from pydantic import ValidationError

from .ingest import detect_format, import_playback_impl
from .log import get_logger
from .models import ImportInput, ImportResult
from .storage import Storage

logger = get_logger(__name__)

# Default DB next to the package (or use PLAYREPORT_DB_PATH)
_db_path = os.environ.get("PLAYREPORT_DB_PATH", str(Path(__file__).parent.parent / "playreport.db"))
_storage = Storage(_db_path)

mcp = FastMCP(name="playreport")


@mcp.tool(name="playreport.import_playback")
def playreport_import_playback(payload: dict) -> dict:
    """
    Import a Playback Reporting export (TSV or JSON) for a server.
    payload: { server_id, content, format?: "tsv"|"json", filename?, content_type? }.
    When format is omitted it is picked from filename/content_type (".json" or application/json).
    Returns { type, message, imported_count, total_count, error_count, skipped_count, duplicate_count, errors? }.
    """
    data = dict(payload)
    content_type = data.pop("content_type", None)
    if "format" not in data:
        data["format"] = detect_format(data.get("filename"), content_type)
    try:
        inp = ImportInput.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Rejected import request: {e.error_count()} invalid fields")
        return ImportResult(type="error", message="Server ID and file are required").to_summary()
    return import_playback_impl(inp, _storage).to_summary()


@mcp.tool(name="playreport.register_user")
def playreport_register_user(user_id: str, name: str) -> dict:
    """Add or rename a user so imported sessions can link to it."""
    _storage.upsert_user(user_id, name)
    return {"id": user_id, "name": name}


@mcp.tool(name="playreport.register_item")
def playreport_register_item(item_id: str, name: str, item_type: Optional[str] = None) -> dict:
    """Add or rename a library item so imported sessions can link to it."""
    _storage.upsert_item(item_id, name, item_type)
    return {"id": item_id, "name": name, "type": item_type}


@mcp.resource("session://{session_id}", mime_type="application/json")
def resource_session(session_id: str) -> str:
    """Read-only: one imported session, including its import audit block."""
    row = _storage.get_session(session_id)
    if not row:
        return json.dumps({"error": "session not found", "session_id": session_id})
    return json.dumps(row, indent=2)


def run() -> None:
    """Run the MCP server with stdio transport (default)."""
    mcp.run()

