"""
Durability layer: snapshot persistence of the in-memory broker state.

Every persisted collection is written whole on each save (no incremental log).
Two backends share one async interface:
  - JsonFileBackend: one `<collection>.json` file per collection (default)
  - SqliteBackend:   one row per collection in a `snapshots` table, via aiosqlite
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite

from nervecord.config import Settings
from nervecord.db import crud
from nervecord.db.models import Message, Bot, Priority, Project, Suggestion, utc_now, format_ts
from nervecord.db.store import BrokerState
from nervecord.errors import StorageError

logger = logging.getLogger(__name__)

# collection name -> (BrokerState attribute, record class)
PERSISTED = {
    "messages": ("messages", Message),
    "bots": ("bots", Bot),
    "priorities": ("priorities", Priority),
    "suggestions": ("suggestions", Suggestion),
    "projects": ("projects", Project),
}


class Backend(Protocol):
    async def load(self, name: str) -> Optional[list]:
        """Return the stored records, None if nothing was ever saved. Raises StorageError."""

    async def save(self, name: str, records: list[dict]) -> None:
        """Overwrite the collection with `records`. Raises StorageError."""

    async def close(self) -> None: ...


class JsonFileBackend:
    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def path(self, name: str) -> Path:
        return self.data_dir / f"{name}.json"

    async def load(self, name: str) -> Optional[list]:
        path = self.path(name)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read {path.name}: {e}") from e
        if not isinstance(records, list):
            raise StorageError(f"{path.name} does not hold a JSON list")
        return records

    async def save(self, name: str, records: list[dict]) -> None:
        # Plain overwrite: no fsync, no atomic rename
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path(name), "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
        except (OSError, TypeError) as e:
            raise StorageError(f"cannot write {name}.json: {e}") from e

    async def close(self) -> None:
        pass


class SqliteBackend:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def get_db(self) -> aiosqlite.Connection:
        """Return the shared connection, opening it and creating the schema on first use."""
        if self._db is None:
            async with self._lock:
                if self._db is None:
                    if self.db_path != ":memory:":
                        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                    db = await aiosqlite.connect(self.db_path)
                    db.row_factory = aiosqlite.Row
                    await db.execute("PRAGMA journal_mode=WAL")
                    await init_schema(db)
                    self._db = db
                    logger.info(f"Snapshot database initialized at {self.db_path}")
        return self._db

    async def load(self, name: str) -> Optional[list]:
        try:
            db = await self.get_db()
            async with db.execute("SELECT payload FROM snapshots WHERE collection = ?", (name,)) as cur:
                row = await cur.fetchone()
        except Exception as e:
            raise StorageError(f"cannot read snapshot '{name}': {e}") from e
        if row is None:
            return None
        try:
            records = json.loads(row["payload"])
        except ValueError as e:
            raise StorageError(f"snapshot '{name}' is not valid JSON: {e}") from e
        if not isinstance(records, list):
            raise StorageError(f"snapshot '{name}' does not hold a JSON list")
        return records

    async def save(self, name: str, records: list[dict]) -> None:
        try:
            db = await self.get_db()
            await db.execute(
                "INSERT OR REPLACE INTO snapshots (collection, payload, saved_at) VALUES (?, ?, ?)",
                (name, json.dumps(records), format_ts(utc_now())),
            )
            await db.commit()
        except Exception as e:
            raise StorageError(f"cannot write snapshot '{name}': {e}") from e

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Snapshot database closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create the snapshot table if it does not already exist (idempotent)."""
    await db.executescript("""
        CREATE TABLE IF NOT EXISTS snapshots (
            collection  TEXT PRIMARY KEY,
            payload     TEXT NOT NULL,
            saved_at    TEXT NOT NULL
        );
    """)
    await db.commit()


def make_backend(settings: Settings) -> Backend:
    if settings.backend == "sqlite":
        return SqliteBackend(settings.db_path or str(Path(settings.data_dir) / "nervecord.db"))
    if settings.backend != "json":
        raise ValueError(f"Unknown storage backend '{settings.backend}'. Use 'json' or 'sqlite'.")
    return JsonFileBackend(settings.data_dir)


class Durability:
    """Loads state once at startup and writes full snapshots afterwards."""

    def __init__(self, state: BrokerState, backend: Backend) -> None:
        self.state = state
        self.backend = backend

    async def load_all(self) -> dict[str, str]:
        """
        Load every persisted collection independently.

        A collection that cannot be read or decoded starts empty. That loses its
        history, so it is logged as a warning and recorded in state.load_report.
        """
        report = self.state.load_report
        for name, (attr, record_cls) in PERSISTED.items():
            store = getattr(self.state, attr)
            try:
                raw = await self.backend.load(name)
                if raw is None:
                    report[name] = "missing"
                    logger.info(f"No saved {name}, starting empty")
                    continue
                store.replace_all(record_cls.from_dict(d) for d in raw)
            except (StorageError, KeyError, TypeError, ValueError, AttributeError) as e:
                store.replace_all([])
                report[name] = f"reset: {e}"
                logger.warning(f"Collection '{name}' reset to empty, saved data unusable: {e}")
                continue
            report[name] = "loaded"
            logger.info(f"Loaded {len(store)} {name} from storage")

        if crud.priority_assign_missing_ids(self.state):
            logger.info("Migrated priorities to stable ids")
            await self.save_all()
        return report

    async def save_all(self) -> bool:
        """Write every persisted collection. Failures are logged, never raised."""
        ok = True
        for name, (attr, _) in PERSISTED.items():
            records = [r.to_dict() for r in getattr(self.state, attr)]
            try:
                await self.backend.save(name, records)
            except StorageError as e:
                ok = False
                logger.error(f"Save failed for '{name}': {e}")
        return ok

    async def close(self) -> None:
        await self.backend.close()
