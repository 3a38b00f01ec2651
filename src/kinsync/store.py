"""SQLite persistence for canonical persons, identities, snapshots and overrides."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .errors import KinsyncError
from .models import (
    CanonicalPerson,
    ExternalIdentity,
    Gender,
    LocalOverride,
    ParentEdge,
    ParentRole,
    Provider,
    ScrapedRecord,
    VitalEvent,
    new_canonical_id,
    utcnow,
)


class PersonInUseError(KinsyncError):
    """A canonical person cannot be deleted while other persons reference it."""


class SyncStore:
    """SQLite-backed store.

    Tables:
    - person: canonical baseline (aggregate root)
    - external_identity: (source, external_id) -> person_id, unique per key
      and at most one row per (person_id, source)
    - scraped_record: append-only provider snapshots
    - parent_edge: child -> parent relationships, unique per pair
    - local_override: (entity_type, entity_id, field_name) -> override
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def _get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._get_conn() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS person (
                    person_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL DEFAULT '',
                    gender TEXT NOT NULL DEFAULT 'unknown',
                    living INTEGER NOT NULL DEFAULT 0,
                    birth_date TEXT,
                    birth_place TEXT,
                    death_date TEXT,
                    death_place TEXT,
                    alternate_names_json TEXT NOT NULL DEFAULT '[]',
                    occupations_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS external_identity (
                    source TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    person_id TEXT NOT NULL REFERENCES person(person_id) ON DELETE CASCADE,
                    url TEXT,
                    confidence REAL NOT NULL DEFAULT 1.0,
                    last_seen_at TEXT NOT NULL,
                    PRIMARY KEY (source, external_id),
                    UNIQUE (person_id, source)
                );
                CREATE INDEX IF NOT EXISTS idx_identity_person ON external_identity(person_id);

                CREATE TABLE IF NOT EXISTS scraped_record (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    person_id TEXT NOT NULL REFERENCES person(person_id) ON DELETE CASCADE,
                    provider TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    scraped_at TEXT NOT NULL,
                    record_json TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_scraped_person ON scraped_record(person_id, provider, id);

                CREATE TABLE IF NOT EXISTS parent_edge (
                    child_id TEXT NOT NULL REFERENCES person(person_id) ON DELETE CASCADE,
                    parent_id TEXT NOT NULL REFERENCES person(person_id) ON DELETE CASCADE,
                    parent_role TEXT NOT NULL DEFAULT 'parent'
                        CHECK (parent_role IN ('father', 'mother', 'parent')),
                    confidence REAL NOT NULL DEFAULT 1.0,
                    source TEXT,
                    UNIQUE (child_id, parent_id)
                );
                CREATE INDEX IF NOT EXISTS idx_parent_edge_parent ON parent_edge(parent_id);

                CREATE TABLE IF NOT EXISTS local_override (
                    override_id TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    original_value TEXT,
                    override_value TEXT,
                    reason TEXT,
                    source TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (entity_type, entity_id, field_name)
                );
                CREATE INDEX IF NOT EXISTS idx_override_entity ON local_override(entity_type, entity_id);
                """
            )
            conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._get_conn() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    # ---------------------------- Persons ----------------------------

    @staticmethod
    def _insert_person(conn: sqlite3.Connection, person: CanonicalPerson) -> None:
        conn.execute(
            """
            INSERT INTO person (
                person_id, display_name, gender, living, birth_date, birth_place,
                death_date, death_place, alternate_names_json, occupations_json,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                person.person_id,
                person.display_name,
                person.gender.value,
                int(person.living),
                person.birth.date,
                person.birth.place,
                person.death.date,
                person.death.place,
                json.dumps(person.alternate_names),
                json.dumps(person.occupations),
                person.created_at.isoformat(),
                person.updated_at.isoformat(),
            ),
        )

    def add_person(self, person: CanonicalPerson) -> CanonicalPerson:
        with self.transaction() as conn:
            self._insert_person(conn, person)
        return person

    def get_person(self, person_id: str) -> CanonicalPerson | None:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM person WHERE person_id = ?", (person_id,)).fetchone()
        return _row_to_person(row) if row else None

    def person_exists(self, person_id: str) -> bool:
        with self._get_conn() as conn:
            row = conn.execute("SELECT 1 FROM person WHERE person_id = ?", (person_id,)).fetchone()
        return row is not None

    def update_person(self, person: CanonicalPerson) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                UPDATE person SET display_name = ?, gender = ?, living = ?,
                    birth_date = ?, birth_place = ?, death_date = ?, death_place = ?,
                    alternate_names_json = ?, occupations_json = ?, updated_at = ?
                WHERE person_id = ?
                """,
                (
                    person.display_name,
                    person.gender.value,
                    int(person.living),
                    person.birth.date,
                    person.birth.place,
                    person.death.date,
                    person.death.place,
                    json.dumps(person.alternate_names),
                    json.dumps(person.occupations),
                    utcnow().isoformat(),
                    person.person_id,
                ),
            )

    def delete_person(self, person_id: str) -> bool:
        """Delete a person and everything it owns.

        Refuses while the person is recorded as another person's parent.
        """
        with self.transaction() as conn:
            child = conn.execute(
                "SELECT child_id FROM parent_edge WHERE parent_id = ? LIMIT 1", (person_id,)
            ).fetchone()
            if child:
                raise PersonInUseError(f"{person_id} is a parent of {child['child_id']}")
            cur = conn.execute("DELETE FROM person WHERE person_id = ?", (person_id,))
        return cur.rowcount > 0

    # ----------------------- External identities ----------------------

    def claim_identity(
        self,
        source: Provider,
        external_id: str,
        candidate: CanonicalPerson,
        *,
        url: str | None = None,
        confidence: float = 1.0,
    ) -> tuple[str, bool]:
        """Atomically bind (source, external_id) to ``candidate`` unless already bound.

        Returns ``(person_id, created)``. When another writer won the race the
        provisional person is rolled back and the winner's ID is returned.
        """
        now = utcnow().isoformat()
        with self.transaction() as conn:
            self._insert_person(conn, candidate)
            cur = conn.execute(
                """
                INSERT INTO external_identity (source, external_id, person_id, url, confidence, last_seen_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(source, external_id) DO NOTHING
                """,
                (source.value, external_id, candidate.person_id, url, confidence, now),
            )
            if cur.rowcount == 1:
                return candidate.person_id, True

            conn.execute("DELETE FROM person WHERE person_id = ?", (candidate.person_id,))
            conn.execute(
                """
                UPDATE external_identity SET last_seen_at = ?, url = COALESCE(?, url)
                WHERE source = ? AND external_id = ?
                """,
                (now, url, source.value, external_id),
            )
            row = conn.execute(
                "SELECT person_id FROM external_identity WHERE source = ? AND external_id = ?",
                (source.value, external_id),
            ).fetchone()
        return row["person_id"], False

    def insert_identity_if_absent(self, identity: ExternalIdentity) -> ExternalIdentity:
        """Insert an identity row; on conflict return the row already stored."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO external_identity (source, external_id, person_id, url, confidence, last_seen_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(source, external_id) DO NOTHING
                """,
                (
                    identity.source.value,
                    identity.external_id,
                    identity.person_id,
                    identity.url,
                    identity.confidence,
                    identity.last_seen_at.isoformat(),
                ),
            )
            row = conn.execute(
                "SELECT * FROM external_identity WHERE source = ? AND external_id = ?",
                (identity.source.value, identity.external_id),
            ).fetchone()
        return _row_to_identity(row)

    def touch_identity(
        self,
        source: Provider,
        external_id: str,
        *,
        url: str | None = None,
        confidence: float | None = None,
    ) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE external_identity
                SET last_seen_at = ?, url = COALESCE(?, url), confidence = COALESCE(?, confidence)
                WHERE source = ? AND external_id = ?
                """,
                (utcnow().isoformat(), url, confidence, source.value, external_id),
            )
        return cur.rowcount > 0

    def get_identity(self, source: Provider, external_id: str) -> ExternalIdentity | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM external_identity WHERE source = ? AND external_id = ?",
                (source.value, external_id),
            ).fetchone()
        return _row_to_identity(row) if row else None

    def identity_for_person(self, person_id: str, source: Provider) -> ExternalIdentity | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM external_identity WHERE person_id = ? AND source = ?",
                (person_id, source.value),
            ).fetchone()
        return _row_to_identity(row) if row else None

    def identities_for_person(self, person_id: str) -> list[ExternalIdentity]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM external_identity WHERE person_id = ? ORDER BY source",
                (person_id,),
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def identities_for_source(self, source: Provider, external_ids: list[str]) -> dict[str, str]:
        if not external_ids:
            return {}
        placeholders = ",".join("?" for _ in external_ids)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT external_id, person_id FROM external_identity "
                f"WHERE source = ? AND external_id IN ({placeholders})",
                (source.value, *external_ids),
            ).fetchall()
        return {r["external_id"]: r["person_id"] for r in rows}

    def delete_identity(self, source: Provider, external_id: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM external_identity WHERE source = ? AND external_id = ?",
                (source.value, external_id),
            )
        return cur.rowcount > 0

    # ------------------------ Scraped snapshots ------------------------

    def save_snapshot(self, person_id: str, record: ScrapedRecord) -> int:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO scraped_record (person_id, provider, external_id, scraped_at, record_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    person_id,
                    record.provider.value,
                    record.external_id,
                    record.scraped_at.isoformat(),
                    record.model_dump_json(),
                ),
            )
        return int(cur.lastrowid)

    def latest_snapshots(self, person_id: str) -> dict[Provider, ScrapedRecord]:
        """Most recent snapshot per provider for one person."""
        with self._get_conn() as conn:
            rows = conn.execute(
                """
                SELECT s.provider, s.record_json FROM scraped_record s
                JOIN (
                    SELECT provider, MAX(id) AS max_id FROM scraped_record
                    WHERE person_id = ? GROUP BY provider
                ) latest ON latest.max_id = s.id
                """,
                (person_id,),
            ).fetchall()
        return {
            Provider(r["provider"]): ScrapedRecord.model_validate_json(r["record_json"])
            for r in rows
        }

    def snapshot_history(
        self, person_id: str, provider: Provider, limit: int = 10
    ) -> list[ScrapedRecord]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """
                SELECT record_json FROM scraped_record
                WHERE person_id = ? AND provider = ?
                ORDER BY id DESC LIMIT ?
                """,
                (person_id, provider.value, limit),
            ).fetchall()
        return [ScrapedRecord.model_validate_json(r["record_json"]) for r in rows]

    # --------------------------- Parent edges ---------------------------

    def add_parent_edge(self, edge: ParentEdge) -> bool:
        """Insert an edge; returns False when the pair already exists."""
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO parent_edge (child_id, parent_id, parent_role, confidence, source)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(child_id, parent_id) DO NOTHING
                """,
                (edge.child_id, edge.parent_id, edge.parent_role.value, edge.confidence, edge.source),
            )
        return cur.rowcount == 1

    def parents_of(self, child_id: str) -> list[ParentEdge]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM parent_edge WHERE child_id = ? ORDER BY parent_role",
                (child_id,),
            ).fetchall()
        return [
            ParentEdge(
                child_id=r["child_id"],
                parent_id=r["parent_id"],
                parent_role=ParentRole(r["parent_role"]),
                confidence=r["confidence"],
                source=r["source"],
            )
            for r in rows
        ]

    def parent_by_role(self, child_id: str, role: ParentRole) -> CanonicalPerson | None:
        with self._get_conn() as conn:
            row = conn.execute(
                """
                SELECT p.* FROM parent_edge e JOIN person p ON p.person_id = e.parent_id
                WHERE e.child_id = ? AND e.parent_role = ?
                ORDER BY e.confidence DESC LIMIT 1
                """,
                (child_id, role.value),
            ).fetchone()
        return _row_to_person(row) if row else None

    def count_children(self, parent_id: str) -> int:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM parent_edge WHERE parent_id = ?", (parent_id,)
            ).fetchone()
        return int(row["n"])

    # -------------------------- Local overrides --------------------------

    def upsert_override(self, override: LocalOverride) -> LocalOverride:
        """Create or update an override; the first ``original_value`` is kept."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO local_override (
                    override_id, entity_type, entity_id, field_name, original_value,
                    override_value, reason, source, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_type, entity_id, field_name) DO UPDATE SET
                    override_value = excluded.override_value,
                    reason = excluded.reason,
                    source = excluded.source,
                    updated_at = excluded.updated_at
                """,
                (
                    override.override_id or new_canonical_id(),
                    override.entity_type,
                    override.entity_id,
                    override.field_name,
                    override.original_value,
                    override.override_value,
                    override.reason,
                    override.source,
                    override.created_at.isoformat(),
                    override.updated_at.isoformat(),
                ),
            )
            row = conn.execute(
                """
                SELECT * FROM local_override
                WHERE entity_type = ? AND entity_id = ? AND field_name = ?
                """,
                (override.entity_type, override.entity_id, override.field_name),
            ).fetchone()
        return _row_to_override(row)

    def get_override(self, entity_type: str, entity_id: str, field_name: str) -> LocalOverride | None:
        with self._get_conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM local_override
                WHERE entity_type = ? AND entity_id = ? AND field_name = ?
                """,
                (entity_type, entity_id, field_name),
            ).fetchone()
        return _row_to_override(row) if row else None

    def overrides_for_entity(self, entity_type: str, entity_id: str) -> list[LocalOverride]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM local_override WHERE entity_type = ? AND entity_id = ?
                ORDER BY field_name
                """,
                (entity_type, entity_id),
            ).fetchall()
        return [_row_to_override(r) for r in rows]

    def delete_override(self, entity_type: str, entity_id: str, field_name: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM local_override
                WHERE entity_type = ? AND entity_id = ? AND field_name = ?
                """,
                (entity_type, entity_id, field_name),
            )
        return cur.rowcount > 0

    def count_overrides(self) -> int:
        with self._get_conn() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM local_override").fetchone()
        return int(row["n"])


# ----------------------------- Row mapping -----------------------------


def _row_to_person(row: sqlite3.Row) -> CanonicalPerson:
    return CanonicalPerson(
        person_id=row["person_id"],
        display_name=row["display_name"],
        gender=Gender(row["gender"]),
        living=bool(row["living"]),
        birth=VitalEvent(date=row["birth_date"], place=row["birth_place"]),
        death=VitalEvent(date=row["death_date"], place=row["death_place"]),
        alternate_names=json.loads(row["alternate_names_json"]),
        occupations=json.loads(row["occupations_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_identity(row: sqlite3.Row) -> ExternalIdentity:
    return ExternalIdentity(
        source=Provider(row["source"]),
        external_id=row["external_id"],
        person_id=row["person_id"],
        url=row["url"],
        confidence=row["confidence"],
        last_seen_at=datetime.fromisoformat(row["last_seen_at"]),
    )


def _row_to_override(row: sqlite3.Row) -> LocalOverride:
    return LocalOverride(
        override_id=row["override_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        field_name=row["field_name"],
        original_value=row["original_value"],
        override_value=row["override_value"],
        reason=row["reason"],
        source=row["source"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
