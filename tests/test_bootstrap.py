import sqlite3
from pathlib import Path

import pytest

import catalog_admin.bootstrap as bootstrap_module
from catalog_admin.bootstrap import BootstrapError, Bootstrapper
from catalog_admin.config import AppConfig
from catalog_admin.services.catalog import ENTITY_TYPES


def _config(tmp_path: Path) -> AppConfig:
    storage_root = tmp_path / "storage"
    return AppConfig(
        storage_root=storage_root,
        database_file=storage_root / "catalog.db",
        blob_root=tmp_path / "bucket",
    )


def _tables(database_file: Path) -> set:
    connection = sqlite3.connect(database_file)
    try:
        rows = connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    finally:
        connection.close()
    return {row[0] for row in rows}


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    config = _config(tmp_path)
    original_ensure = bootstrap_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == config.storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(bootstrap_module, "_ensure_writable_directory", fake_ensure)

    with pytest.raises(BootstrapError) as excinfo:
        Bootstrapper(config).initialize()

    assert "storage" in str(excinfo.value).lower()


def test_bootstrapper_creates_schema_idempotently(tmp_path: Path) -> None:
    config = _config(tmp_path)

    Bootstrapper(config).initialize()
    Bootstrapper(config).initialize()

    tables = _tables(config.database_file)
    for info in ENTITY_TYPES.values():
        assert info.key in tables
        if info.linkable:
            assert info.junction_table in tables
    assert {"lectures", "deleted_entities", "upload_jobs", "merge_history"} <= tables
    assert config.blob_root.is_dir()


def test_bootstrapper_adds_missing_entity_columns(tmp_path: Path) -> None:
    config = _config(tmp_path)
    config.storage_root.mkdir(parents=True)
    connection = sqlite3.connect(config.database_file)
    connection.execute("CREATE TABLE directors (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)")
    connection.commit()
    connection.close()

    Bootstrapper(config).initialize()

    connection = sqlite3.connect(config.database_file)
    try:
        columns = {row[1] for row in connection.execute("PRAGMA table_info(directors)")}
    finally:
        connection.close()
    assert {"hebrew_name", "description"} <= columns
