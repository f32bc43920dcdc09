"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import AppConfig, _ensure_writable_directory, load_config
from .services.blobs import BlobStore, create_blob_store
from .services.catalog import ENTITY_TYPES, CatalogRepository
from .services.database import SQLiteStore
from .services.duplicates import DuplicateDetector
from .services.generation import CompletionClient, DescriptionGenerator, OpenAICompletionClient
from .services.history import MergeHistory
from .services.jobs import UploadJobQueue
from .services.merge import MergeEngine
from .services.recovery import RecoveryService
from .services.review import DuplicateReviewer

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


_BASE_SCHEMA = """
PRAGMA foreign_keys = ON;
CREATE TABLE IF NOT EXISTS courses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    hebrew_name TEXT,
    description TEXT,
    r2_dir TEXT UNIQUE,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);

CREATE TABLE IF NOT EXISTS lectures (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    synopsis TEXT,
    order_in_course INTEGER,
    UNIQUE(course_id, order_in_course),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS deleted_entities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    original_id INTEGER NOT NULL,
    entity_type TEXT NOT NULL,
    name TEXT NOT NULL,
    hebrew_name TEXT,
    description TEXT,
    junction_data TEXT NOT NULL DEFAULT '[]',
    has_image INTEGER NOT NULL DEFAULT 0,
    deleted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS upload_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    lecture_number INTEGER NOT NULL,
    r2_dir TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'succeeded', 'failed')),
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    output TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    UNIQUE(course_id, lecture_number),
    FOREIGN KEY(course_id) REFERENCES courses(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_upload_jobs_status_created
    ON upload_jobs(status, created_at, id);

CREATE TABLE IF NOT EXISTS merge_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_sig TEXT NOT NULL UNIQUE,
    action TEXT NOT NULL CHECK (action IN ('approved', 'declined')),
    keep_type TEXT,
    decided_at TEXT NOT NULL
);
"""


def _entity_schema() -> str:
    statements: List[str] = []
    for info in ENTITY_TYPES.values():
        if info.key == "courses":
            continue
        statements.append(
            f"""
            CREATE TABLE IF NOT EXISTS {info.key} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                {info.name_field} TEXT NOT NULL,
                hebrew_name TEXT,
                description TEXT
            );
            """
        )
        if not info.linkable:
            continue
        statements.append(
            f"""
            CREATE TABLE IF NOT EXISTS {info.junction_table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                lecture_id INTEGER NOT NULL,
                {info.fk_column} INTEGER NOT NULL,
                relationship_type TEXT NOT NULL DEFAULT 'discussed'
                    CHECK (relationship_type IN ('discussed', 'mentioned')),
                UNIQUE(lecture_id, {info.fk_column}),
                FOREIGN KEY(lecture_id) REFERENCES lectures(id) ON DELETE CASCADE,
                FOREIGN KEY({info.fk_column}) REFERENCES {info.key}(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_{info.junction_table}_{info.fk_column}
                ON {info.junction_table}({info.fk_column});
            """
        )
    return "\n".join(statements)


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        directories = [self._config.storage_root, self._config.database_file.parent]
        if self._config.blob_backend == "local":
            directories.append(self._config.blob_root)
        for path in directories:
            if not _ensure_writable_directory(path):
                raise BootstrapError(f"Directory is not writable: {path}")
            LOGGER.debug("Ensured directory exists: %s", path)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Could not open database {self._config.database_file}: {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(_BASE_SCHEMA)
            cursor.executescript(_entity_schema())
            connection.commit()

            def _column_exists(table: str, column: str) -> bool:
                cursor.execute(f"PRAGMA table_info({table})")
                return any(row[1] == column for row in cursor.fetchall())

            # Databases created before descriptions were tracked on entities.
            for info in ENTITY_TYPES.values():
                for column in ("hebrew_name", "description"):
                    if not _column_exists(info.key, column):
                        cursor.execute(f"ALTER TABLE {info.key} ADD COLUMN {column} TEXT")
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Could not prepare database schema: {error}") from error
        finally:
            connection.close()


@dataclass
class CatalogServices:
    """Collaborators shared by the web application and the CLI."""

    config: AppConfig
    catalog: CatalogRepository
    jobs: UploadJobQueue
    history: MergeHistory
    blobs: BlobStore
    detector: DuplicateDetector
    merger: MergeEngine
    recovery: RecoveryService
    reviewer: DuplicateReviewer
    descriptions: DescriptionGenerator

    def stores(self) -> Tuple[SQLiteStore, ...]:
        return (self.catalog, self.jobs, self.history)

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        for store in self.stores():
            store.configure_event_emitter(emitter)
        self.blobs.configure_event_emitter(emitter)


def build_services(
    config: AppConfig,
    *,
    blobs: Optional[BlobStore] = None,
    completion_client: Optional[CompletionClient] = None,
) -> CatalogServices:
    """Wire the stores and engines for *config*."""

    catalog = CatalogRepository(config)
    blob_store = blobs if blobs is not None else create_blob_store(config)
    history = MergeHistory(config)
    detector = DuplicateDetector(catalog, blob_store)
    merger = MergeEngine(catalog, blob_store)
    client = (
        completion_client
        if completion_client is not None
        else OpenAICompletionClient(config.completion)
    )
    return CatalogServices(
        config=config,
        catalog=catalog,
        jobs=UploadJobQueue(config),
        history=history,
        blobs=blob_store,
        detector=detector,
        merger=merger,
        recovery=RecoveryService(catalog, blob_store),
        reviewer=DuplicateReviewer(detector, merger, history),
        descriptions=DescriptionGenerator(catalog, client),
    )


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = [
    "BootstrapError",
    "Bootstrapper",
    "CatalogServices",
    "build_services",
    "initialize_app",
]
