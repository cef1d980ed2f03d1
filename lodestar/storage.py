"""SQLite storage for collection metadata, point payloads and raw vectors."""

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union


class PointStore:
    """
    Keeps everything the HNSW index itself does not: collection settings,
    point payloads and a copy of each vector so the index can be rebuilt.

    Every point gets an integer key the first time it is written. The key is
    kept when the point is overwritten, so key order is insertion order.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS collections (
                name TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL,
                metric TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS points (
                collection TEXT NOT NULL,
                point_id TEXT NOT NULL,
                key INTEGER NOT NULL,
                payload_json TEXT,
                vector BLOB NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (collection, point_id)
            )
        """)

        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_points_key ON points(collection, key)"
        )
        self.conn.commit()

    # ============ Collections ============

    def get_collection(self, name: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM collections WHERE name = ?", (name,)).fetchone()
        return dict(row) if row else None

    def create_collection(self, name: str, dimension: int, metric: str) -> None:
        self.conn.execute(
            "INSERT INTO collections (name, dimension, metric) VALUES (?, ?, ?)",
            (name, dimension, metric),
        )
        self.conn.commit()

    def delete_collection(self, name: str) -> int:
        """Drop a collection and its points. Returns the number of points removed."""
        cursor = self.conn.cursor()
        deleted = cursor.execute("DELETE FROM points WHERE collection = ?", (name,)).rowcount
        cursor.execute("DELETE FROM collections WHERE name = ?", (name,))
        self.conn.commit()
        return deleted

    def list_collections(self) -> List[Dict[str, Any]]:
        """List all collections with point counts."""
        rows = self.conn.execute("""
            SELECT c.name, c.dimension, c.metric, COUNT(p.point_id) AS points
            FROM collections c
            LEFT JOIN points p ON p.collection = c.name
            GROUP BY c.name
            ORDER BY c.name
        """).fetchall()
        return [dict(row) for row in rows]

    # ============ Points ============

    def upsert_point(self, collection: str, point_id: str, vector: bytes, payload: Dict[str, Any]) -> int:
        """Insert or overwrite a point. Returns its integer key. Call commit() after a batch."""
        cursor = self.conn.cursor()
        row = cursor.execute(
            "SELECT key FROM points WHERE collection = ? AND point_id = ?",
            (collection, point_id),
        ).fetchone()

        if row:
            cursor.execute("""
                UPDATE points
                SET payload_json = ?, vector = ?, updated_at = CURRENT_TIMESTAMP
                WHERE collection = ? AND point_id = ?
            """, (json.dumps(payload), vector, collection, point_id))
            return int(row["key"])

        key = cursor.execute(
            "SELECT COALESCE(MAX(key), 0) + 1 FROM points WHERE collection = ?", (collection,)
        ).fetchone()[0]
        cursor.execute("""
            INSERT INTO points (collection, point_id, key, payload_json, vector)
            VALUES (?, ?, ?, ?, ?)
        """, (collection, point_id, key, json.dumps(payload), vector))
        return int(key)

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def get_points(self, collection: str, keys: Sequence[int]) -> Dict[int, Dict[str, Any]]:
        """Fetch points by key. Missing keys are absent from the result."""
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        rows = self.conn.execute(
            f"SELECT key, point_id, payload_json FROM points "
            f"WHERE collection = ? AND key IN ({placeholders})",
            (collection, *keys),
        ).fetchall()
        return {
            int(row["key"]): {
                "point_id": row["point_id"],
                "payload": json.loads(row["payload_json"]) if row["payload_json"] else {},
            }
            for row in rows
        }

    def iter_vectors(self, collection: str) -> Iterator[Tuple[int, bytes]]:
        """Yield (key, raw vector bytes) for every point in a collection."""
        cursor = self.conn.execute(
            "SELECT key, vector FROM points WHERE collection = ? ORDER BY key", (collection,)
        )
        for row in cursor:
            yield int(row["key"]), row["vector"]

    def count(self, collection: str) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM points WHERE collection = ?", (collection,)
        ).fetchone()[0]

    def close(self) -> None:
        """Close database connection."""
        self.conn.close()
