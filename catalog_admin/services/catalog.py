"""Entity catalog persistence: typed entities, lecture links and backups."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .database import SQLiteStore, utcnow_iso
from .errors import NotFoundError, ValidationError


LOGGER = logging.getLogger(__name__)


RELATIONSHIP_TYPES = ("discussed", "mentioned")


@dataclass(frozen=True)
class EntityType:
    """Static description of one entity table."""

    key: str
    label: str
    name_field: str
    junction_table: Optional[str] = None
    fk_column: Optional[str] = None

    @property
    def linkable(self) -> bool:
        return self.junction_table is not None and self.fk_column is not None


ENTITY_TYPES: Dict[str, EntityType] = {
    "courses": EntityType("courses", "Courses", "title"),
    "directors": EntityType("directors", "Directors", "name", "lecture_directors", "director_id"),
    "films": EntityType("films", "Films", "title", "lecture_films", "film_id"),
    "writers": EntityType("writers", "Writers", "name", "lecture_writers", "writer_id"),
    "books": EntityType("books", "Books", "title", "lecture_books", "book_id"),
    "painters": EntityType("painters", "Painters", "name", "lecture_painters", "painter_id"),
    "paintings": EntityType("paintings", "Paintings", "title", "lecture_paintings", "painting_id"),
    "philosophers": EntityType(
        "philosophers", "Philosophers", "name", "lecture_philosophers", "philosopher_id"
    ),
}

LINKABLE_TYPES: Tuple[str, ...] = tuple(
    key for key, info in ENTITY_TYPES.items() if info.linkable
)


def resolve_entity_type(value: Any) -> EntityType:
    """Return the :class:`EntityType` for *value* or raise ``ValidationError``."""

    key = str(value or "").strip().lower()
    info = ENTITY_TYPES.get(key)
    if info is None:
        raise ValidationError(f"Unknown entity type: {value!r}")
    return info


def require_linkable(value: Any) -> EntityType:
    info = resolve_entity_type(value)
    if not info.linkable:
        raise ValidationError(f"Entity type '{info.key}' has no lecture links")
    return info


@dataclass
class EntityRecord:
    id: int
    entity_type: str
    display_name: str
    hebrew_name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class JunctionRecord:
    id: int
    lecture_id: int
    entity_id: int
    relationship_type: str

    def snapshot(self, fk_column: str) -> Dict[str, Any]:
        """Return the row as stored, keyed by column name."""

        return {
            "id": self.id,
            "lecture_id": self.lecture_id,
            fk_column: self.entity_id,
            "relationship_type": self.relationship_type,
        }


@dataclass
class CourseRecord:
    id: int
    title: str
    r2_dir: Optional[str]
    hebrew_name: Optional[str] = None
    description: Optional[str] = None


@dataclass
class LectureRecord:
    id: int
    course_id: int
    title: str
    order_in_course: Optional[int]
    synopsis: Optional[str] = None


@dataclass
class BackupRecord:
    id: int
    original_id: int
    entity_type: str
    name: str
    hebrew_name: Optional[str]
    description: Optional[str]
    junction_data: List[Dict[str, Any]] = field(default_factory=list)
    has_image: bool = False
    deleted_at: Optional[str] = None


_MISSING = object()


class CatalogRepository(SQLiteStore):
    """CRUD helpers over courses, lectures, entities, links and backups.

    Every method accepts an optional ``connection`` so that multi-step
    operations can run inside one :meth:`transaction`.
    """

    # ------------------------------------------------------------------
    # Courses and lectures
    # ------------------------------------------------------------------
    def add_course(
        self,
        title: str,
        *,
        r2_dir: Optional[str] = None,
        description: Optional[str] = None,
        hebrew_name: Optional[str] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        LOGGER.debug("Adding course '%s' (r2_dir=%s)", title, r2_dir)
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                "INSERT INTO courses(title, hebrew_name, description, r2_dir) VALUES (?, ?, ?, ?)",
                (title, hebrew_name, description, r2_dir),
                action="courses.insert",
                table="courses",
            )
            return int(cursor.lastrowid)

    def get_course(
        self, course_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> Optional[CourseRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT id, title, r2_dir, hebrew_name, description FROM courses WHERE id = ?",
                (course_id,),
                action="courses.get",
                table="courses",
            ).fetchone()
            return CourseRecord(**row) if row else None

    def add_lecture(
        self,
        course_id: int,
        title: str,
        *,
        order_in_course: Optional[int] = None,
        synopsis: Optional[str] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        LOGGER.debug(
            "Adding lecture '%s' to course_id=%s at order=%s", title, course_id, order_in_course
        )
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                "INSERT INTO lectures(course_id, title, synopsis, order_in_course) VALUES (?, ?, ?, ?)",
                (course_id, title, synopsis, order_in_course),
                action="lectures.insert",
                table="lectures",
            )
            return int(cursor.lastrowid)

    def get_lecture(
        self, lecture_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> Optional[LectureRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT id, course_id, title, order_in_course, synopsis FROM lectures WHERE id = ?",
                (lecture_id,),
                action="lectures.get",
                table="lectures",
            ).fetchone()
            return LectureRecord(**row) if row else None

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------
    def add_entity(
        self,
        entity_type: str,
        name: str,
        *,
        hebrew_name: Optional[str] = None,
        description: Optional[str] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        info = resolve_entity_type(entity_type)
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError(f"A {info.name_field} is required")
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"INSERT INTO {info.key}({info.name_field}, hebrew_name, description) VALUES (?, ?, ?)",
                (cleaned, hebrew_name, description),
                action=f"{info.key}.insert",
                table=info.key,
            )
            entity_id = int(cursor.lastrowid)
        LOGGER.debug("Inserted %s id=%s name='%s'", info.key, entity_id, cleaned)
        return entity_id

    def _entity_from_row(self, info: EntityType, row: sqlite3.Row) -> EntityRecord:
        return EntityRecord(
            id=int(row["id"]),
            entity_type=info.key,
            display_name=row[info.name_field],
            hebrew_name=row["hebrew_name"],
            description=row["description"],
        )

    def get_entity(
        self,
        entity_type: str,
        entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[EntityRecord]:
        info = resolve_entity_type(entity_type)
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                f"SELECT id, {info.name_field}, hebrew_name, description FROM {info.key} WHERE id = ?",
                (entity_id,),
                action=f"{info.key}.get",
                table=info.key,
            ).fetchone()
            return self._entity_from_row(info, row) if row else None

    def require_entity(
        self,
        entity_type: str,
        entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> EntityRecord:
        record = self.get_entity(entity_type, entity_id, connection=connection)
        if record is None:
            raise NotFoundError(f"{resolve_entity_type(entity_type).key} #{entity_id} not found")
        return record

    def list_entities(
        self, entity_type: str, *, connection: Optional[sqlite3.Connection] = None
    ) -> List[EntityRecord]:
        info = resolve_entity_type(entity_type)
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                f"SELECT id, {info.name_field}, hebrew_name, description FROM {info.key} ORDER BY id",
                action=f"{info.key}.list",
                table=info.key,
            ).fetchall()
        return [self._entity_from_row(info, row) for row in rows]

    def find_entity_by_name(
        self,
        entity_type: str,
        name: str,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[EntityRecord]:
        info = resolve_entity_type(entity_type)
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                f"""
                SELECT id, {info.name_field}, hebrew_name, description
                FROM {info.key}
                WHERE {info.name_field} = ?
                ORDER BY id
                LIMIT 1
                """,
                (name,),
                action=f"{info.key}.lookup_by_name",
                table=info.key,
            ).fetchone()
            return self._entity_from_row(info, row) if row else None

    def update_entity(
        self,
        entity_type: str,
        entity_id: int,
        *,
        name: Any = _MISSING,
        hebrew_name: Any = _MISSING,
        description: Any = _MISSING,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        info = resolve_entity_type(entity_type)
        assignments: List[str] = []
        params: List[Any] = []
        if name is not _MISSING:
            cleaned = (name or "").strip()
            if not cleaned:
                raise ValidationError(f"A {info.name_field} is required")
            assignments.append(f"{info.name_field} = ?")
            params.append(cleaned)
        if hebrew_name is not _MISSING:
            assignments.append("hebrew_name = ?")
            params.append(hebrew_name)
        if description is not _MISSING:
            assignments.append("description = ?")
            params.append(description)
        if not assignments:
            raise ValidationError("No fields to update")

        params.append(entity_id)
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"UPDATE {info.key} SET {', '.join(assignments)} WHERE id = ?",
                params,
                action=f"{info.key}.update",
                table=info.key,
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"{info.key} #{entity_id} not found")

    def delete_entity(
        self,
        entity_type: str,
        entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Delete the entity row and return the number of rows removed."""

        info = resolve_entity_type(entity_type)
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"DELETE FROM {info.key} WHERE id = ?",
                (entity_id,),
                action=f"{info.key}.delete",
                table=info.key,
            )
            return int(cursor.rowcount)

    # ------------------------------------------------------------------
    # Lecture links
    # ------------------------------------------------------------------
    def link_entity(
        self,
        lecture_id: int,
        entity_type: str,
        entity_id: int,
        relationship_type: str = "discussed",
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Upsert the link between a lecture and an entity and return its id."""

        info = require_linkable(entity_type)
        if relationship_type not in RELATIONSHIP_TYPES:
            raise ValidationError(f"Unknown relationship type: {relationship_type!r}")
        with self._session(connection) as conn:
            self._execute(
                conn,
                f"""
                INSERT INTO {info.junction_table}(lecture_id, {info.fk_column}, relationship_type)
                VALUES (?, ?, ?)
                ON CONFLICT(lecture_id, {info.fk_column})
                DO UPDATE SET relationship_type = excluded.relationship_type
                """,
                (lecture_id, entity_id, relationship_type),
                action=f"{info.junction_table}.upsert",
                table=info.junction_table,
            )
            row = self._execute(
                conn,
                f"SELECT id FROM {info.junction_table} WHERE lecture_id = ? AND {info.fk_column} = ?",
                (lecture_id, entity_id),
                action=f"{info.junction_table}.lookup",
                table=info.junction_table,
            ).fetchone()
            return int(row["id"])

    def _junction_from_row(self, info: EntityType, row: sqlite3.Row) -> JunctionRecord:
        return JunctionRecord(
            id=int(row["id"]),
            lecture_id=int(row["lecture_id"]),
            entity_id=int(row[info.fk_column]),
            relationship_type=row["relationship_type"],
        )

    def list_links(
        self,
        entity_type: str,
        entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[JunctionRecord]:
        info = resolve_entity_type(entity_type)
        if not info.linkable:
            return []
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                f"""
                SELECT id, lecture_id, {info.fk_column}, relationship_type
                FROM {info.junction_table}
                WHERE {info.fk_column} = ?
                ORDER BY id
                """,
                (entity_id,),
                action=f"{info.junction_table}.by_entity",
                table=info.junction_table,
            ).fetchall()
        return [self._junction_from_row(info, row) for row in rows]

    def list_lecture_links(
        self, lecture_id: int, entity_type: str
    ) -> List[Tuple[JunctionRecord, EntityRecord]]:
        info = require_linkable(entity_type)
        with self._session() as conn:
            rows = self._execute(
                conn,
                f"""
                SELECT j.id, j.lecture_id, j.{info.fk_column}, j.relationship_type,
                       e.{info.name_field}, e.hebrew_name, e.description
                FROM {info.junction_table} AS j
                JOIN {info.key} AS e ON e.id = j.{info.fk_column}
                WHERE j.lecture_id = ?
                ORDER BY e.{info.name_field} COLLATE NOCASE, j.id
                """,
                (lecture_id,),
                action=f"{info.junction_table}.by_lecture",
                table=info.junction_table,
            ).fetchall()
        results: List[Tuple[JunctionRecord, EntityRecord]] = []
        for row in rows:
            junction = self._junction_from_row(info, row)
            entity = EntityRecord(
                id=junction.entity_id,
                entity_type=info.key,
                display_name=row[info.name_field],
                hebrew_name=row["hebrew_name"],
                description=row["description"],
            )
            results.append((junction, entity))
        return results

    def set_relationship_type(
        self, entity_type: str, junction_id: int, relationship_type: str
    ) -> None:
        info = require_linkable(entity_type)
        if relationship_type not in RELATIONSHIP_TYPES:
            raise ValidationError(f"Unknown relationship type: {relationship_type!r}")
        with self._session() as conn:
            cursor = self._execute(
                conn,
                f"UPDATE {info.junction_table} SET relationship_type = ? WHERE id = ?",
                (relationship_type, junction_id),
                action=f"{info.junction_table}.set_relationship",
                table=info.junction_table,
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Link #{junction_id} not found")

    def insert_links(
        self,
        entity_type: str,
        entity_id: int,
        rows: Sequence[Tuple[int, str]],
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Insert ``(lecture_id, relationship_type)`` links for one entity.

        Plain inserts: a pair that already exists violates the unique
        constraint and raises ``StoreFailure``.
        """

        info = require_linkable(entity_type)
        inserted = 0
        with self._session(connection) as conn:
            for lecture_id, relationship_type in rows:
                self._execute(
                    conn,
                    f"""
                    INSERT INTO {info.junction_table}(lecture_id, {info.fk_column}, relationship_type)
                    VALUES (?, ?, ?)
                    """,
                    (lecture_id, entity_id, relationship_type),
                    action=f"{info.junction_table}.insert",
                    table=info.junction_table,
                )
                inserted += 1
        return inserted

    def repoint_links(
        self,
        entity_type: str,
        junction_ids: Sequence[int],
        new_entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Update the foreign key of existing rows in place."""

        info = require_linkable(entity_type)
        if not junction_ids:
            return 0
        placeholders = ", ".join("?" for _ in junction_ids)
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"UPDATE {info.junction_table} SET {info.fk_column} = ? WHERE id IN ({placeholders})",
                [new_entity_id, *junction_ids],
                action=f"{info.junction_table}.repoint",
                table=info.junction_table,
            )
            return int(cursor.rowcount)

    def delete_links(
        self,
        entity_type: str,
        junction_ids: Sequence[int],
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        info = require_linkable(entity_type)
        if not junction_ids:
            return 0
        placeholders = ", ".join("?" for _ in junction_ids)
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"DELETE FROM {info.junction_table} WHERE id IN ({placeholders})",
                list(junction_ids),
                action=f"{info.junction_table}.delete",
                table=info.junction_table,
            )
            return int(cursor.rowcount)

    def delete_entity_links(
        self,
        entity_type: str,
        entity_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        info = resolve_entity_type(entity_type)
        if not info.linkable:
            return 0
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                f"DELETE FROM {info.junction_table} WHERE {info.fk_column} = ?",
                (entity_id,),
                action=f"{info.junction_table}.delete_by_entity",
                table=info.junction_table,
            )
            return int(cursor.rowcount)

    def connection_counts(self, entity_type: str) -> Dict[int, int]:
        """Return ``entity_id -> number of lecture links`` for one type."""

        info = resolve_entity_type(entity_type)
        if not info.linkable:
            return {}
        with self._session() as conn:
            rows = self._execute(
                conn,
                f"""
                SELECT {info.fk_column} AS entity_id, COUNT(*) AS link_count
                FROM {info.junction_table}
                GROUP BY {info.fk_column}
                """,
                action=f"{info.junction_table}.counts",
                table=info.junction_table,
            ).fetchall()
        return {int(row["entity_id"]): int(row["link_count"]) for row in rows}

    # ------------------------------------------------------------------
    # Soft-delete backups
    # ------------------------------------------------------------------
    def add_backup(
        self,
        *,
        original_id: int,
        entity_type: str,
        name: str,
        hebrew_name: Optional[str],
        description: Optional[str],
        junction_data: List[Dict[str, Any]],
        has_image: bool,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                """
                INSERT INTO deleted_entities(
                    original_id,
                    entity_type,
                    name,
                    hebrew_name,
                    description,
                    junction_data,
                    has_image,
                    deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    original_id,
                    entity_type,
                    name,
                    hebrew_name,
                    description,
                    json.dumps(junction_data),
                    1 if has_image else 0,
                    utcnow_iso(),
                ),
                action="deleted_entities.insert",
                table="deleted_entities",
            )
            return int(cursor.lastrowid)

    @staticmethod
    def _backup_from_row(row: sqlite3.Row) -> BackupRecord:
        try:
            junction_data = json.loads(row["junction_data"] or "[]")
        except json.JSONDecodeError:
            LOGGER.warning("Backup #%s has unreadable junction data", row["id"])
            junction_data = []
        return BackupRecord(
            id=int(row["id"]),
            original_id=int(row["original_id"]),
            entity_type=row["entity_type"],
            name=row["name"],
            hebrew_name=row["hebrew_name"],
            description=row["description"],
            junction_data=list(junction_data) if isinstance(junction_data, list) else [],
            has_image=bool(row["has_image"]),
            deleted_at=row["deleted_at"],
        )

    def get_backup(
        self, backup_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> Optional[BackupRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM deleted_entities WHERE id = ?",
                (backup_id,),
                action="deleted_entities.get",
                table="deleted_entities",
            ).fetchone()
            return self._backup_from_row(row) if row else None

    def list_backups(self) -> List[BackupRecord]:
        with self._session() as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM deleted_entities ORDER BY deleted_at DESC, id DESC",
                action="deleted_entities.list",
                table="deleted_entities",
            ).fetchall()
        return [self._backup_from_row(row) for row in rows]

    def delete_backup(
        self, backup_id: int, *, connection: Optional[sqlite3.Connection] = None
    ) -> int:
        with self._session(connection) as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM deleted_entities WHERE id = ?",
                (backup_id,),
                action="deleted_entities.delete",
                table="deleted_entities",
            )
            return int(cursor.rowcount)


__all__ = [
    "BackupRecord",
    "CatalogRepository",
    "CourseRecord",
    "ENTITY_TYPES",
    "EntityRecord",
    "EntityType",
    "JunctionRecord",
    "LINKABLE_TYPES",
    "LectureRecord",
    "RELATIONSHIP_TYPES",
    "require_linkable",
    "resolve_entity_type",
]
