"""
Append-only activity log, sharded into one JSON file per UTC day.

An append rewrites only its own day's shard; older shards are never touched
except by an explicit delete.
"""
import json
import logging
import re
from pathlib import Path
from typing import Optional

from nervecord.db.models import LogEntry, format_ts
from nervecord.errors import StorageError

logger = logging.getLogger(__name__)

_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ActivityLog:
    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)

    @staticmethod
    def date_key(entry: LogEntry) -> str:
        return format_ts(entry.created)[:10]  # YYYY-MM-DD

    def shard_path(self, date_key: str) -> Path:
        return self.log_dir / f"{date_key}.json"

    def read_shard(self, date_key: str) -> list[LogEntry]:
        """Entries of one day. A missing or unreadable shard reads as empty."""
        path = self.shard_path(date_key)
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                return [LogEntry.from_dict(d) for d in json.load(f)]
        except Exception as e:
            logger.warning(f"Unreadable log shard {path.name}, treating as empty: {e}")
            return []

    def _write_shard(self, date_key: str, entries: list[LogEntry]) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.shard_path(date_key), "w", encoding="utf-8") as f:
                json.dump([e.to_dict() for e in entries], f, indent=2)
        except OSError as e:
            raise StorageError(f"failed to write activity log: {e}") from e

    def date_keys(self) -> list[str]:
        """Shard dates present on disk, newest first."""
        if not self.log_dir.is_dir():
            return []
        return sorted((p.stem for p in self.log_dir.glob("*.json")), reverse=True)

    def append(self, entry: LogEntry) -> LogEntry:
        key = self.date_key(entry)
        entries = self.read_shard(key)
        entries.append(entry)
        self._write_shard(key, entries)
        logger.debug(f"Log entry {entry.id} appended to shard {key}")
        return entry

    def query(
        self,
        date: Optional[str] = None,
        sender: Optional[str] = None,
        tag: Optional[str] = None,
        limit: int = 0,
    ) -> list[LogEntry]:
        if date and not _DATE_KEY.match(date):
            return []
        keys = [date] if date else self.date_keys()
        results: list[LogEntry] = []
        for key in keys:
            results.extend(self.read_shard(key))
        if sender:
            results = [e for e in results if e.sender == sender]
        if tag:
            results = [e for e in results if tag in e.tags]
        results.sort(key=lambda e: e.created, reverse=True)
        if limit > 0:
            results = results[:limit]
        return results

    def delete(self, entry_id: str) -> bool:
        for key in self.date_keys():
            entries = self.read_shard(key)
            kept = [e for e in entries if e.id != entry_id]
            if len(kept) != len(entries):
                self._write_shard(key, kept)
                return True
        return False
