"""
Local Snapshot Cache
====================
Last known full snapshot of the order collection, kept as one JSON file.
Read at startup as a fallback, rewritten after every mutation.
"""

import os
import json
import logging
import tempfile
from typing import Dict, List, Any
from pathlib import Path

logger = logging.getLogger(__name__)


SNAPSHOT_VERSION = 1


class LocalCache:
    """JSON file holding the whole order collection."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0

    def read(self) -> List[Dict[str, Any]]:
        """
        Load the cached records.

        Returns:
            List of order records; empty if the file is missing or corrupt
        """
        if not self.path.exists():
            logger.info(f"No local snapshot at {self.path}")
            return []

        try:
            with self.path.open("r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            self.error_count += 1
            logger.error(f"Failed to read local snapshot {self.path}: {str(e)}")
            return []

        # Bare lists are accepted for snapshots written by hand
        records = payload.get("orders", []) if isinstance(payload, dict) else payload

        if not isinstance(records, list):
            self.error_count += 1
            logger.error(f"Local snapshot {self.path} has no order list")
            return []

        self.read_count += 1
        logger.info(f"Loaded {len(records)} orders from local snapshot")
        return records

    def write(self, records: List[Dict[str, Any]]) -> bool:
        """
        Replace the snapshot atomically.

        Returns:
            True if written
        """
        payload = {"version": SNAPSHOT_VERSION, "orders": records}

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            self.error_count += 1
            logger.error(f"Failed to write local snapshot {self.path}: {str(e)}")
            return False

        self.write_count += 1
        logger.debug(f"Wrote {len(records)} orders to local snapshot")
        return True

    def clear(self) -> bool:
        """Write an empty snapshot."""
        return self.write([])

    def get_stats(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
        }
