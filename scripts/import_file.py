#!/usr/bin/env python3
"""
Run a Playback Reporting export through the playreport importer directly
(no MCP server needed). Usage: python scripts/import_file.py <export.tsv|export.json> [server_id] [db_path]
"""
from __future__ import annotations

import json
import sys
from pathlib import Path

# Project root = parent of scripts/
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from playreport.ingest import import_playback_file
from playreport.storage import Storage

DEFAULT_DB = ROOT / "playreport_test.db"


def main() -> None:
    if len(sys.argv) < 2:
        print(__doc__.strip())
        sys.exit(1)
    path = Path(sys.argv[1])
    server_id = int(sys.argv[2]) if len(sys.argv) > 2 else 1
    db_path = Path(sys.argv[3]) if len(sys.argv) > 3 else DEFAULT_DB

    storage = Storage(db_path)
    try:
        result = import_playback_file(path, server_id, storage)
        print(json.dumps(result.model_dump(), indent=2))
        print(f"\nSessions stored for server {server_id}: {storage.count_sessions(server_id)}")
    finally:
        storage.close()
    sys.exit(0 if result.type != "error" else 2)


if __name__ == "__main__":
    main()
