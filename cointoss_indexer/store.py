import json
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .util import _json_dumps

# Entity fields mirrored into real columns so the query layer can filter on them.
INDEXED_FIELDS = ("status", "creator", "chain_id", "pool", "player", "round")


class EntityStore:
    """Key-value entity persistence over SQLite.

    Entities are stored as JSON documents keyed by (entity_type, id). Integer
    fields stay Python ints end to end, so wei amounts never hit SQLite's
    64-bit column limit. Writes issued inside ``transaction()`` become
    visible together or not at all.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._tx_depth = 0
        self.init_db()

    def init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                entity_type TEXT NOT NULL,
                id TEXT NOT NULL,
                status TEXT,
                creator TEXT,
                chain_id INTEGER,
                pool TEXT,
                player TEXT,
                round TEXT,
                block_number INTEGER,
                log_index INTEGER,
                data TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (entity_type, id)
            )
            """
        )
        for field in INDEXED_FIELDS:
            cur.execute(
                f"CREATE INDEX IF NOT EXISTS idx_entities_{field} ON entities(entity_type, {field})"
            )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_entities_order ON entities(entity_type, block_number, log_index)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                chain_id INTEGER PRIMARY KEY,
                last_processed_block INTEGER NOT NULL,
                last_log_index INTEGER NOT NULL,
                last_processed_timestamp INTEGER,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self._tx_depth += 1
        try:
            yield
        except Exception:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self.conn.rollback()
            raise
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self.conn.commit()

    def _maybe_commit(self) -> None:
        if self._tx_depth == 0:
            self.conn.commit()

    def get(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT data FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type, str(entity_id)),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["data"])

    def exists(self, entity_type: str, entity_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM entities WHERE entity_type = ? AND id = ?",
            (entity_type, str(entity_id)),
        ).fetchone()
        return row is not None

    def set(self, entity_type: str, entity: Dict[str, Any]) -> None:
        if "id" not in entity:
            raise ValueError(f"{entity_type} entity has no id")
        self.conn.execute(
            """
            INSERT OR REPLACE INTO entities (
                entity_type, id, status, creator, chain_id, pool, player, round,
                block_number, log_index, data, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (
                entity_type,
                str(entity["id"]),
                entity.get("status"),
                entity.get("creator"),
                entity.get("chain_id"),
                entity.get("pool"),
                entity.get("player"),
                entity.get("round"),
                entity.get("block_number"),
                entity.get("log_index"),
                _json_dumps(entity),
            ),
        )
        self._maybe_commit()

    def get_or_create(
        self,
        entity_type: str,
        entity_id: str,
        factory: Callable[[], Dict[str, Any]],
    ) -> Tuple[Dict[str, Any], bool]:
        """Return ``(entity, created)``; a created entity is not persisted until ``set``."""
        entity = self.get(entity_type, entity_id)
        if entity is not None:
            return entity, False
        entity = factory()
        entity["id"] = str(entity_id)
        return entity, True

    def _where(self, entity_type: str, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        clauses = ["entity_type = ?"]
        params: List[Any] = [entity_type]
        for name, value in filters.items():
            if name not in INDEXED_FIELDS:
                raise ValueError(f"{name} is not an indexed field")
            if value is None:
                continue
            clauses.append(f"{name} = ?")
            params.append(value)
        return "WHERE " + " AND ".join(clauses), params

    def find(
        self,
        entity_type: str,
        limit: Optional[int] = None,
        newest_first: bool = False,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        where, params = self._where(entity_type, filters)
        if newest_first:
            order = "ORDER BY block_number DESC, log_index DESC, id DESC"
        else:
            order = "ORDER BY id ASC"
        sql = f"SELECT data FROM entities {where} {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def count(self, entity_type: str, **filters: Any) -> int:
        where, params = self._where(entity_type, filters)
        row = self.conn.execute(f"SELECT COUNT(*) AS n FROM entities {where}", params).fetchone()
        return int(row["n"])

    def dump(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        out: Dict[str, Dict[str, Dict[str, Any]]] = {}
        rows = self.conn.execute(
            "SELECT entity_type, id, data FROM entities ORDER BY entity_type, id"
        ).fetchall()
        for row in rows:
            out.setdefault(row["entity_type"], {})[row["id"]] = json.loads(row["data"])
        return out

    def get_cursor(self, chain_id: int) -> Optional[Tuple[int, int]]:
        row = self.conn.execute(
            "SELECT last_processed_block, last_log_index FROM sync_state WHERE chain_id = ?",
            (chain_id,),
        ).fetchone()
        if row is None:
            return None
        return int(row["last_processed_block"]), int(row["last_log_index"])

    def set_cursor(
        self,
        chain_id: int,
        block_number: int,
        log_index: int,
        block_timestamp: Optional[int] = None,
    ) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_state (chain_id, last_processed_block, last_log_index, last_processed_timestamp)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(chain_id) DO UPDATE SET
                last_processed_block = excluded.last_processed_block,
                last_log_index = excluded.last_log_index,
                last_processed_timestamp = excluded.last_processed_timestamp,
                updated_at = CURRENT_TIMESTAMP
            """,
            (chain_id, block_number, log_index, block_timestamp),
        )
        self._maybe_commit()
