"""Configuration loading utilities for the catalog admin application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".catalog_admin_write_check"

S3_ACCESS_KEY_ENV = "CATALOG_ADMIN_S3_ACCESS_KEY_ID"
S3_SECRET_KEY_ENV = "CATALOG_ADMIN_S3_SECRET_ACCESS_KEY"
OPENAI_API_KEY_ENV = "OPENAI_API_KEY"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. A flag reports whether a fallback was
    used. When nothing can be prepared the original ``preferred`` path is
    returned so callers fail loudly later.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class S3Settings:
    """Connection details for an S3-compatible bucket."""

    bucket: str
    endpoint_url: Optional[str] = None
    region: str = "auto"
    access_key_id: Optional[str] = field(default=None, repr=False)
    secret_access_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "S3Settings":
        return cls(
            bucket=str(mapping.get("bucket") or ""),
            endpoint_url=mapping.get("endpoint_url") or None,
            region=str(mapping.get("region") or "auto"),
            access_key_id=os.environ.get(S3_ACCESS_KEY_ENV),
            secret_access_key=os.environ.get(S3_SECRET_KEY_ENV),
        )


@dataclass(frozen=True)
class CompletionSettings:
    """Model parameters for the text/JSON completion service."""

    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_output_tokens: int = 6000
    api_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "CompletionSettings":
        defaults = cls()
        return cls(
            model=str(mapping.get("model") or defaults.model),
            temperature=float(mapping.get("temperature", defaults.temperature)),
            max_output_tokens=int(mapping.get("max_output_tokens", defaults.max_output_tokens)),
            api_key=os.environ.get(OPENAI_API_KEY_ENV),
        )


@dataclass(frozen=True)
class AppConfig:
    """Container describing runtime paths and collaborator settings."""

    storage_root: Path
    database_file: Path
    blob_root: Path
    blob_backend: str = "local"
    s3: Optional[S3Settings] = None
    completion: CompletionSettings = field(default_factory=CompletionSettings)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".catalog_admin" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_blobs = (base_path / mapping.get("blob_root", "bucket")).resolve()
        blob_root, _ = _select_writable_directory(
            preferred_blobs,
            label="bucket",
            fallbacks=(storage_root / "_bucket",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        blob_backend = str(mapping.get("blob_backend") or "local").lower()
        if blob_backend not in {"local", "s3"}:
            raise ValueError(f"Unsupported blob backend: {blob_backend}")
        s3_mapping = mapping.get("s3")
        s3 = S3Settings.from_mapping(s3_mapping) if isinstance(s3_mapping, dict) else None
        if blob_backend == "s3" and (s3 is None or not s3.bucket):
            raise ValueError("The s3 blob backend requires an 's3.bucket' setting")

        completion = CompletionSettings.from_mapping(mapping.get("completion") or {})

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            blob_root=blob_root,
            blob_backend=blob_backend,
            s3=s3,
            completion=completion,
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "CompletionSettings", "S3Settings", "load_config"]
