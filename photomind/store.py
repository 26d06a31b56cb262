"""SQLite-backed store for photos, face detections, persons and scan jobs.

The store is the single writer-of-record. Vectors live in BLOB columns as
little-endian float32 arrays (see vectors.py). One connection is shared
between the ingestion worker and request handlers, guarded by a lock.
"""

import json
import logging
import sqlite3
import threading
import time
import uuid as uuid_lib
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from photomind.errors import StoreError
from photomind.vectors import safe_deserialize, serialize

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS photos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT UNIQUE NOT NULL,
    file_path TEXT UNIQUE NOT NULL,
    file_name TEXT,
    file_size INTEGER,
    width INTEGER,
    height INTEGER,
    taken_at TEXT,
    exif_data TEXT,
    location_data TEXT,
    thumbnail_path TEXT,
    status TEXT DEFAULT 'local',
    faces_scanned INTEGER NOT NULL DEFAULT 0,
    created_at REAL
);

CREATE TABLE IF NOT EXISTS persons (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    display_name TEXT,
    face_count INTEGER NOT NULL DEFAULT 0,
    is_manual INTEGER NOT NULL DEFAULT 0,
    created_at REAL
);

CREATE TABLE IF NOT EXISTS detected_faces (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    photo_id INTEGER NOT NULL REFERENCES photos(id) ON DELETE CASCADE,
    bbox_x REAL,
    bbox_y REAL,
    bbox_width REAL,
    bbox_height REAL,
    confidence REAL,
    embedding BLOB,
    face_embedding BLOB,
    semantic_embedding BLOB,
    vector_version INTEGER NOT NULL DEFAULT 0,
    person_id INTEGER REFERENCES persons(id) ON DELETE SET NULL,
    is_manual INTEGER NOT NULL DEFAULT 0,
    created_at REAL
);
CREATE INDEX IF NOT EXISTS idx_faces_photo ON detected_faces(photo_id);
CREATE INDEX IF NOT EXISTS idx_faces_person ON detected_faces(person_id);

CREATE TABLE IF NOT EXISTS scan_jobs (
    id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    total_photos INTEGER NOT NULL DEFAULT 0,
    processed_photos INTEGER NOT NULL DEFAULT 0,
    failed_photos INTEGER NOT NULL DEFAULT 0,
    last_processed_id INTEGER,
    started_at REAL NOT NULL,
    completed_at REAL,
    last_heartbeat REAL NOT NULL,
    error_message TEXT
);
CREATE INDEX IF NOT EXISTS idx_scan_jobs_started ON scan_jobs(started_at);
"""


@dataclass
class Photo:
    id: int
    uuid: str
    file_path: str
    file_name: str = ""
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    taken_at: str | None = None
    exif_data: str | None = None
    location_data: str | None = None
    thumbnail_path: str | None = None
    status: str = "local"
    faces_scanned: bool = False


@dataclass
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


@dataclass
class NewDetection:
    """A detection about to be written for a photo."""

    box: BoundingBox
    confidence: float
    face_embedding: np.ndarray | None = None
    semantic_embedding: np.ndarray | None = None
    embedding: np.ndarray | None = None  # legacy slot
    is_manual: bool = False


@dataclass
class FaceDetection:
    id: int
    photo_id: int
    box: BoundingBox
    confidence: float
    vector_version: int
    person_id: int | None = None
    is_manual: bool = False
    embedding: np.ndarray | None = field(default=None, repr=False)
    face_embedding: np.ndarray | None = field(default=None, repr=False)
    semantic_embedding: np.ndarray | None = field(default=None, repr=False)


@dataclass
class Person:
    id: int
    name: str
    display_name: str
    face_count: int
    is_manual: bool


def vector_version_for(face_embedding, semantic_embedding) -> int:
    """0 = no vectors, 1 = face only, 2 = face + semantic."""
    has_face = face_embedding is not None and len(face_embedding) > 0
    has_semantic = semantic_embedding is not None and len(semantic_embedding) > 0
    if has_face and has_semantic:
        return 2
    if has_face:
        return 1
    return 0


def _photo_from_row(row: sqlite3.Row) -> Photo:
    return Photo(
        id=row["id"],
        uuid=row["uuid"],
        file_path=row["file_path"],
        file_name=row["file_name"] or "",
        file_size=row["file_size"],
        width=row["width"],
        height=row["height"],
        taken_at=row["taken_at"],
        exif_data=row["exif_data"],
        location_data=row["location_data"],
        thumbnail_path=row["thumbnail_path"],
        status=row["status"] or "local",
        faces_scanned=bool(row["faces_scanned"]),
    )


def _face_from_row(row: sqlite3.Row) -> FaceDetection:
    return FaceDetection(
        id=row["id"],
        photo_id=row["photo_id"],
        box=BoundingBox(row["bbox_x"], row["bbox_y"], row["bbox_width"], row["bbox_height"]),
        confidence=row["confidence"] or 0.0,
        vector_version=row["vector_version"],
        person_id=row["person_id"],
        is_manual=bool(row["is_manual"]),
        embedding=safe_deserialize(row["embedding"]),
        face_embedding=safe_deserialize(row["face_embedding"]),
        semantic_embedding=safe_deserialize(row["semantic_embedding"]),
    )


def _person_from_row(row: sqlite3.Row) -> Person:
    return Person(
        id=row["id"],
        name=row["name"],
        display_name=row["display_name"] or row["name"],
        face_count=row["face_count"],
        is_manual=bool(row["is_manual"]),
    )


def _to_json(value) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


class VectorStore:
    def __init__(self, db_path: Path | str):
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- generic access --

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def run(self, sql: str, params: tuple | list = ()) -> int:
        """Execute a write and commit. Returns lastrowid."""
        with self._lock:
            try:
                cursor = self._conn.execute(sql, tuple(params))
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"{exc} (sql: {sql.split()[0]})") from exc
            return cursor.lastrowid

    @contextmanager
    def transaction(self):
        """Group writes into one commit; rolls back and raises StoreError on failure."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(str(exc)) from exc
            except Exception:
                self._conn.rollback()
                raise

    # -- photos --

    def add_photo(
        self,
        file_path: str,
        *,
        uuid: str | None = None,
        width: int | None = None,
        height: int | None = None,
        file_size: int | None = None,
        taken_at: str | None = None,
        exif_data=None,
        location_data=None,
        thumbnail_path: str | None = None,
    ) -> int:
        """Insert a photo, or return the id of the one already at file_path."""
        existing = self.get_photo_by_file_path(file_path)
        if existing is not None:
            return existing.id
        return self.run(
            """INSERT INTO photos
               (uuid, file_path, file_name, file_size, width, height, taken_at,
                exif_data, location_data, thumbnail_path, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                uuid or str(uuid_lib.uuid4()),
                file_path,
                Path(file_path).name,
                file_size,
                width,
                height,
                taken_at,
                _to_json(exif_data),
                _to_json(location_data),
                thumbnail_path,
                time.time(),
            ),
        )

    def get_photo_by_id(self, photo_id: int) -> Photo | None:
        rows = self.query("SELECT * FROM photos WHERE id = ?", (photo_id,))
        return _photo_from_row(rows[0]) if rows else None

    def get_photo_by_uuid(self, photo_uuid: str) -> Photo | None:
        rows = self.query("SELECT * FROM photos WHERE uuid = ?", (photo_uuid,))
        return _photo_from_row(rows[0]) if rows else None

    def get_photo_by_file_path(self, file_path: str) -> Photo | None:
        rows = self.query("SELECT * FROM photos WHERE file_path = ?", (file_path,))
        return _photo_from_row(rows[0]) if rows else None

    def all_photos(self) -> list[Photo]:
        return [_photo_from_row(r) for r in self.query("SELECT * FROM photos ORDER BY id")]

    def get_unprocessed_photos(self, limit: int = 100, after_id: int | None = None) -> list[Photo]:
        """Photos not yet scanned for faces, ascending id, strictly after after_id."""
        rows = self.query(
            """SELECT p.* FROM photos p
               WHERE p.faces_scanned = 0
                 AND p.id > ?
                 AND NOT EXISTS (SELECT 1 FROM detected_faces f WHERE f.photo_id = p.id)
               ORDER BY p.id
               LIMIT ?""",
            (after_id if after_id is not None else 0, limit),
        )
        return [_photo_from_row(r) for r in rows]

    def count_unprocessed_photos(self, after_id: int | None = None) -> int:
        rows = self.query(
            """SELECT COUNT(*) FROM photos p
               WHERE p.faces_scanned = 0
                 AND p.id > ?
                 AND NOT EXISTS (SELECT 1 FROM detected_faces f WHERE f.photo_id = p.id)""",
            (after_id if after_id is not None else 0,),
        )
        return rows[0][0]

    def mark_photo_scanned(self, photo_id: int) -> None:
        self.mark_photos_scanned([photo_id])

    def mark_photos_scanned(self, photo_ids: list[int]) -> None:
        if not photo_ids:
            return
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE photos SET faces_scanned = 1 WHERE id = ?",
                [(pid,) for pid in photo_ids],
            )

    # -- faces --

    def replace_detections(self, photo_id: int, detections: list[NewDetection]) -> list[int]:
        """Delete every detection of the photo, then insert the new set."""
        now = time.time()
        ids = []
        with self.transaction() as conn:
            affected = {
                r[0] for r in conn.execute(
                    "SELECT DISTINCT person_id FROM detected_faces WHERE photo_id = ? AND person_id IS NOT NULL",
                    (photo_id,),
                )
            }
            conn.execute("DELETE FROM detected_faces WHERE photo_id = ?", (photo_id,))
            for det in detections:
                cursor = conn.execute(
                    """INSERT INTO detected_faces
                       (photo_id, bbox_x, bbox_y, bbox_width, bbox_height, confidence,
                        embedding, face_embedding, semantic_embedding, vector_version,
                        is_manual, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        photo_id,
                        float(det.box.x),
                        float(det.box.y),
                        float(det.box.width),
                        float(det.box.height),
                        float(det.confidence),
                        serialize(det.embedding),
                        serialize(det.face_embedding),
                        serialize(det.semantic_embedding),
                        vector_version_for(det.face_embedding, det.semantic_embedding),
                        int(det.is_manual),
                        now,
                    ),
                )
                ids.append(cursor.lastrowid)
            for person_id in affected:
                if self._refresh_face_count(conn, person_id) == 0:
                    conn.execute("DELETE FROM persons WHERE id = ? AND is_manual = 0", (person_id,))
        return ids

    def get_face(self, face_id: int) -> FaceDetection | None:
        rows = self.query("SELECT * FROM detected_faces WHERE id = ?", (face_id,))
        return _face_from_row(rows[0]) if rows else None

    def faces_for_photo(self, photo_id: int) -> list[FaceDetection]:
        rows = self.query("SELECT * FROM detected_faces WHERE photo_id = ? ORDER BY id", (photo_id,))
        return [_face_from_row(r) for r in rows]

    def unassigned_faces(self) -> list[FaceDetection]:
        """Faces with no person, in arrival order."""
        rows = self.query("SELECT * FROM detected_faces WHERE person_id IS NULL ORDER BY id")
        return [_face_from_row(r) for r in rows]

    def faces_for_person(self, person_id: int) -> list[FaceDetection]:
        rows = self.query(
            "SELECT * FROM detected_faces WHERE person_id = ? ORDER BY confidence DESC, id",
            (person_id,),
        )
        return [_face_from_row(r) for r in rows]

    def photos_for_person(self, person_id: int) -> list[Photo]:
        """Photos with at least one face of the person, newest capture first."""
        rows = self.query(
            """SELECT * FROM photos p
               WHERE EXISTS (SELECT 1 FROM detected_faces f WHERE f.photo_id = p.id AND f.person_id = ?)
               ORDER BY p.taken_at IS NULL, p.taken_at DESC, p.id""",
            (person_id,),
        )
        return [_photo_from_row(r) for r in rows]

    def all_faces_with_vectors(self) -> list[FaceDetection]:
        rows = self.query("SELECT * FROM detected_faces WHERE face_embedding IS NOT NULL ORDER BY id")
        return [_face_from_row(r) for r in rows]

    def semantic_vectors(self) -> list[tuple[int, int, bytes]]:
        """(face_id, photo_id, raw semantic blob) for every face carrying one."""
        rows = self.query(
            """SELECT id, photo_id, semantic_embedding FROM detected_faces
               WHERE semantic_embedding IS NOT NULL ORDER BY id"""
        )
        return [(r["id"], r["photo_id"], r["semantic_embedding"]) for r in rows]

    def assign_face(self, face_id: int, person_id: int) -> None:
        with self.transaction() as conn:
            row = conn.execute("SELECT person_id FROM detected_faces WHERE id = ?", (face_id,)).fetchone()
            previous = row[0] if row else None
            conn.execute("UPDATE detected_faces SET person_id = ? WHERE id = ?", (person_id, face_id))
            self._refresh_face_count(conn, person_id)
            if previous is not None and previous != person_id:
                self._refresh_face_count(conn, previous)

    def unassign_face(self, face_id: int) -> int | None:
        """Clear person_id. Returns the person the face belonged to."""
        with self.transaction() as conn:
            row = conn.execute("SELECT person_id FROM detected_faces WHERE id = ?", (face_id,)).fetchone()
            previous = row[0] if row else None
            conn.execute("UPDATE detected_faces SET person_id = NULL WHERE id = ?", (face_id,))
            if previous is not None:
                self._refresh_face_count(conn, previous)
        return previous

    def reassign_person_faces(self, source_id: int, target_id: int) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE detected_faces SET person_id = ? WHERE person_id = ?",
                (target_id, source_id),
            )
            self._refresh_face_count(conn, target_id)
            self._refresh_face_count(conn, source_id)
            return cursor.rowcount

    def reset_detections(self) -> None:
        """Bulk reset: drop every detection and automatic person, rescan all photos."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM detected_faces")
            conn.execute("DELETE FROM persons WHERE is_manual = 0")
            conn.execute("UPDATE persons SET face_count = 0")
            conn.execute("UPDATE photos SET faces_scanned = 0")

    def face_stats(self) -> dict:
        total = self.query("SELECT COUNT(*) FROM detected_faces")[0][0]
        matched = self.query("SELECT COUNT(*) FROM detected_faces WHERE person_id IS NOT NULL")[0][0]
        by_version = {
            r[0]: r[1]
            for r in self.query("SELECT vector_version, COUNT(*) FROM detected_faces GROUP BY vector_version")
        }
        return {
            "total_faces": total,
            "matched_faces": matched,
            "unmatched_faces": total - matched,
            "match_rate": matched / total if total else 0.0,
            "by_vector_version": by_version,
        }

    # -- persons --

    def create_person(self, name: str, is_manual: bool = False, display_name: str | None = None) -> int:
        return self.run(
            "INSERT INTO persons (name, display_name, face_count, is_manual, created_at) VALUES (?, ?, 0, ?, ?)",
            (name, display_name or name, int(is_manual), time.time()),
        )

    def get_person(self, person_id: int) -> Person | None:
        rows = self.query("SELECT * FROM persons WHERE id = ?", (person_id,))
        return _person_from_row(rows[0]) if rows else None

    def get_person_by_name(self, name: str) -> Person | None:
        rows = self.query("SELECT * FROM persons WHERE name = ?", (name,))
        return _person_from_row(rows[0]) if rows else None

    def list_persons(self) -> list[Person]:
        rows = self.query("SELECT * FROM persons ORDER BY face_count DESC, id")
        return [_person_from_row(r) for r in rows]

    def named_persons(self) -> list[Person]:
        """Persons that have at least one face to build a centroid from."""
        rows = self.query(
            """SELECT * FROM persons p
               WHERE EXISTS (SELECT 1 FROM detected_faces f WHERE f.person_id = p.id)
               ORDER BY p.id"""
        )
        return [_person_from_row(r) for r in rows]

    def delete_person(self, person_id: int) -> None:
        with self.transaction() as conn:
            conn.execute("UPDATE detected_faces SET person_id = NULL WHERE person_id = ?", (person_id,))
            conn.execute("DELETE FROM persons WHERE id = ?", (person_id,))

    def refresh_face_count(self, person_id: int) -> int:
        with self.transaction() as conn:
            return self._refresh_face_count(conn, person_id)

    def delete_orphan_persons(self) -> int:
        """Delete automatic persons no face references."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """DELETE FROM persons
                   WHERE is_manual = 0
                     AND NOT EXISTS (SELECT 1 FROM detected_faces f WHERE f.person_id = persons.id)"""
            )
            return cursor.rowcount

    def max_unnamed_index(self, prefix: str) -> int:
        rows = self.query("SELECT name FROM persons WHERE name LIKE ?", (f"{prefix} %",))
        best = 0
        for row in rows:
            suffix = row["name"][len(prefix) + 1:]
            if suffix.isdigit():
                best = max(best, int(suffix))
        return best

    @staticmethod
    def _refresh_face_count(conn: sqlite3.Connection, person_id: int) -> int:
        count = conn.execute(
            "SELECT COUNT(*) FROM detected_faces WHERE person_id = ?", (person_id,)
        ).fetchone()[0]
        conn.execute("UPDATE persons SET face_count = ? WHERE id = ?", (count, person_id))
        return count
