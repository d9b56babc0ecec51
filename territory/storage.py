# territory/storage.py
"""
SQLite persistence for material embeddings.

Embedding a note is the slowest step of a territory build, so vectors are
kept per material id across process restarts. Vectors are stored as raw
float32 bytes together with their dimensionality.

Tables:
    embeddings (
      material_id TEXT PRIMARY KEY,
      dim INTEGER,
      vector BLOB,
      updated_at REAL
    )
"""

import sqlite3
import time
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

import numpy as np

# Default location of the embedding cache
DB_PATH = Path("territory_embeddings.db")


class SQLiteEmbeddingCache:
    """Mapping-like store of material_id -> float32 vector."""

    def __init__(self, path: Union[str, Path] = DB_PATH):
        self.path = Path(path)
        self.ensure_table()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row  # rows behave like dicts
        return conn

    def ensure_table(self) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS embeddings (
              material_id TEXT PRIMARY KEY,
              dim INTEGER,
              vector BLOB,
              updated_at REAL
            );
            """
        )
        conn.commit()
        conn.close()

    def get(self, material_id: str) -> Optional[np.ndarray]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT dim, vector FROM embeddings WHERE material_id = ?", (material_id,))
        row = cur.fetchone()
        conn.close()
        if row is None:
            return None
        return _decode(row["vector"], row["dim"])

    def get_many(self, material_ids: Iterable[str]) -> Dict[str, np.ndarray]:
        ids = list(material_ids)
        if not ids:
            return {}
        conn = self._conn()
        cur = conn.cursor()
        placeholders = ",".join(["?"] * len(ids))
        cur.execute(
            f"SELECT material_id, dim, vector FROM embeddings WHERE material_id IN ({placeholders})",
            tuple(ids),
        )
        rows = cur.fetchall()
        conn.close()
        return {r["material_id"]: _decode(r["vector"], r["dim"]) for r in rows}

    def put(self, material_id: str, vector: np.ndarray) -> None:
        vec = np.asarray(vector, dtype="float32").ravel()
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            "INSERT OR REPLACE INTO embeddings (material_id, dim, vector, updated_at) VALUES (?,?,?,?)",
            (material_id, int(vec.shape[0]), vec.tobytes(), time.time()),
        )
        conn.commit()
        conn.close()

    def delete(self, material_id: str) -> None:
        conn = self._conn()
        conn.execute("DELETE FROM embeddings WHERE material_id = ?", (material_id,))
        conn.commit()
        conn.close()

    def __len__(self) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) AS n FROM embeddings")
        n = cur.fetchone()["n"]
        conn.close()
        return int(n)


def _decode(blob: bytes, dim: int) -> np.ndarray:
    vec = np.frombuffer(blob, dtype="float32")
    if vec.shape[0] != dim:
        raise ValueError(f"Stored vector has {vec.shape[0]} values, expected {dim}")
    return vec.copy()
