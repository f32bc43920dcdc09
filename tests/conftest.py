from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from catalog_admin.bootstrap import Bootstrapper, CatalogServices, build_services
from catalog_admin.config import AppConfig
from catalog_admin.services.blobs import LocalBlobStore
from catalog_admin.services.errors import StoreFailure


class FakeCompletionClient:
    """Completion client returning canned replies and recording prompts."""

    def __init__(self, replies: Optional[List[str]] = None) -> None:
        self.replies = list(replies or [])
        self.prompts: List[str] = []
        self.schemas: List[Optional[Dict[str, Any]]] = []

    def complete(self, prompt: str, *, schema: Optional[Dict[str, Any]] = None) -> str:
        self.prompts.append(prompt)
        self.schemas.append(schema)
        if not self.replies:
            return ""
        return self.replies.pop(0)


class FailingBlobStore(LocalBlobStore):
    """Local store whose mutating operations always fail."""

    def copy(self, source_key: str, destination_key: str) -> None:
        raise StoreFailure(f"copy refused: {source_key}")

    def delete(self, key: str) -> None:
        raise StoreFailure(f"delete refused: {key}")

    def list_keys(self, prefix: str) -> List[str]:
        raise StoreFailure(f"listing refused: {prefix}")


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/catalog.db",
            "blob_root": "storage/bucket",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture()
def services(temp_config: AppConfig, completion_client: FakeCompletionClient) -> CatalogServices:
    return build_services(temp_config, completion_client=completion_client)


@pytest.fixture()
def failing_services(
    temp_config: AppConfig, completion_client: FakeCompletionClient
) -> CatalogServices:
    return build_services(
        temp_config,
        blobs=FailingBlobStore(temp_config.blob_root),
        completion_client=completion_client,
    )
