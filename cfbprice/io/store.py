"""Persistent store for pipeline tables.

Rows are plain JSON-safe dicts keyed by each table's natural key. Upserts
merge into the existing row with the same key, so a secondary writer (the
HFA estimator updating ratings) never clobbers columns it does not own and
rows under another version are never touched.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import StoreUnavailableError

logger = logging.getLogger(__name__)

TABLE_KEYS: Dict[str, Tuple[str, ...]] = {
    "teams": ("team_id",),
    "games": ("game_id",),
    "market_quotes": ("game_id", "market", "book", "observed_at", "source", "side"),
    "team_game_efficiency": ("game_id", "team_id"),
    "team_priors": ("season", "team_id"),
    "consensus_lines": ("game_id", "market", "version"),
    "team_season_ratings": ("season", "team_id", "model_version"),
    "team_game_features": ("game_id", "team_id", "feature_version"),
    "calibration_results": ("season", "combination", "dataset"),
}

# Quote provenance columns may be absent; they key as None.
NULLABLE_KEY_COLUMNS = frozenset({"observed_at", "source", "side"})

Key = Tuple[Any, ...]


def table_key(table: str, row: Dict[str, Any]) -> Key:
    try:
        columns = TABLE_KEYS[table]
    except KeyError as exc:
        raise KeyError(f"Unknown table '{table}'") from exc
    missing = [c for c in columns if c not in row and c not in NULLABLE_KEY_COLUMNS]
    if missing:
        raise ValueError(f"{table} row missing key columns {missing}")
    return tuple(row.get(c) for c in columns)


def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for column, wanted in filters.items():
        value = row.get(column)
        if isinstance(wanted, (list, tuple, set, frozenset, range)):
            if value not in wanted:
                return False
        elif value != wanted:
            return False
    return True


class Store(ABC):
    """Typed-table store with upsert, keyed lookup, filtered read and count."""

    @abstractmethod
    def _table(self, table: str) -> Dict[Key, Dict[str, Any]]:
        ...

    def _flush(self, table: str) -> None:
        """Persist ``table`` after a write (no-op in memory)."""

    def upsert(self, table: str, rows: Iterable[Dict[str, Any]]) -> int:
        data = self._table(table)
        written = 0
        for row in rows:
            key = table_key(table, row)
            if key in data:
                merged = dict(data[key])
                merged.update(row)
                data[key] = merged
            else:
                data[key] = dict(row)
            written += 1
        if written:
            self._flush(table)
        return written

    def get(self, table: str, key: Key) -> Optional[Dict[str, Any]]:
        row = self._table(table).get(tuple(key))
        return dict(row) if row is not None else None

    def read(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        return [dict(row) for row in self._table(table).values() if _matches(row, filters)]

    def count(self, table: str, **filters: Any) -> int:
        return sum(1 for row in self._table(table).values() if _matches(row, filters))


class MemoryStore(Store):
    def __init__(self) -> None:
        self._tables: Dict[str, Dict[Key, Dict[str, Any]]] = {}

    def _table(self, table: str) -> Dict[Key, Dict[str, Any]]:
        if table not in TABLE_KEYS:
            raise KeyError(f"Unknown table '{table}'")
        return self._tables.setdefault(table, {})


class JsonFileStore(Store):
    """One JSON document per table under ``root``; writes are atomic."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreUnavailableError(f"Cannot create store directory {self.root}: {exc}") from exc
        self._tables: Dict[str, Dict[Key, Dict[str, Any]]] = {}

    def _path(self, table: str) -> Path:
        return self.root / f"{table}.json"

    def _table(self, table: str) -> Dict[Key, Dict[str, Any]]:
        if table not in TABLE_KEYS:
            raise KeyError(f"Unknown table '{table}'")
        if table not in self._tables:
            path = self._path(table)
            rows: List[Dict[str, Any]] = []
            if path.exists():
                try:
                    with path.open("r", encoding="utf-8") as handle:
                        rows = json.load(handle)
                except (OSError, ValueError) as exc:
                    raise StoreUnavailableError(f"Cannot read {path}: {exc}") from exc
            self._tables[table] = {table_key(table, row): row for row in rows}
        return self._tables[table]

    def _flush(self, table: str) -> None:
        path = self._path(table)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as handle:
                json.dump(list(self._tables[table].values()), handle, sort_keys=True)
            tmp.replace(path)
        except OSError as exc:
            raise StoreUnavailableError(f"Cannot write {path}: {exc}") from exc
        logger.debug("Flushed %s (%d rows)", path, len(self._tables[table]))
