"""Soft delete, restore and discard of catalog entities."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

from .blobs import BlobStore, deleted_image_key, image_key
from .catalog import BackupRecord, CatalogRepository, RELATIONSHIP_TYPES, require_linkable
from .errors import NotFoundError, StoreFailure, ValidationError
from .events import emit_catalog_event


LOGGER = logging.getLogger(__name__)


class RecoveryService:
    """Back up entities before deletion and bring them back on request."""

    def __init__(self, catalog: CatalogRepository, blobs: BlobStore) -> None:
        self._catalog = catalog
        self._blobs = blobs

    def list_deleted(self) -> List[BackupRecord]:
        return self._catalog.list_backups()

    def soft_delete(self, entity_type: str, entity_id: int) -> int:
        """Snapshot an entity with its lecture links, then delete it.

        Returns the id of the backup record.
        """

        info = require_linkable(entity_type)
        live_key = image_key(info.key, entity_id)
        try:
            has_image = self._blobs.exists(live_key)
        except StoreFailure as error:
            LOGGER.warning("Could not check image %s: %s", live_key, error)
            has_image = False

        with self._catalog.transaction(immediate=True) as conn:
            entity = self._catalog.get_entity(info.key, entity_id, connection=conn)
            if entity is None:
                raise NotFoundError("Entity not found")
            links = self._catalog.list_links(info.key, entity_id, connection=conn)
            backup_id = self._catalog.add_backup(
                original_id=entity.id,
                entity_type=info.key,
                name=entity.display_name,
                hebrew_name=entity.hebrew_name,
                description=entity.description,
                junction_data=[link.snapshot(info.fk_column) for link in links],
                has_image=has_image,
                connection=conn,
            )
            self._catalog.delete_entity_links(info.key, entity_id, connection=conn)
            self._catalog.delete_entity(info.key, entity_id, connection=conn)

        if has_image:
            try:
                self._blobs.move(live_key, deleted_image_key(info.key, entity_id))
            except StoreFailure as error:
                LOGGER.warning("Could not stage image of %s #%s: %s", info.key, entity_id, error)

        emit_catalog_event(
            "soft_delete",
            payload={
                "entity": f"{info.key}#{entity_id}",
                "backup_id": backup_id,
                "links": len(links),
                "has_image": has_image,
            },
        )
        return backup_id

    @staticmethod
    def _replay_rows(backup: BackupRecord) -> List[Tuple[int, str]]:
        rows: List[Tuple[int, str]] = []
        seen = set()
        for snapshot in backup.junction_data:
            lecture_id = snapshot.get("lecture_id") if isinstance(snapshot, dict) else None
            if lecture_id is None or lecture_id in seen:
                continue
            seen.add(lecture_id)
            relationship = snapshot.get("relationship_type") or "discussed"
            if relationship not in RELATIONSHIP_TYPES:
                relationship = "discussed"
            rows.append((int(lecture_id), relationship))
        return rows

    def restore(self, backup_id: int) -> int:
        """Re-create the entity of a backup under a new id and return that id.

        When a lecture link cannot be re-created the new entity is removed
        again and the backup is kept.
        """

        backup = self._catalog.get_backup(backup_id)
        if backup is None:
            raise NotFoundError("Backup not found")
        try:
            info = require_linkable(backup.entity_type)
        except ValidationError as error:
            raise ValidationError("Unknown entity type in backup") from error

        rows = self._replay_rows(backup)
        try:
            with self._catalog.transaction(immediate=True) as conn:
                new_id = self._catalog.add_entity(
                    info.key,
                    backup.name,
                    hebrew_name=backup.hebrew_name,
                    description=backup.description,
                    connection=conn,
                )
                self._catalog.insert_links(info.key, new_id, rows, connection=conn)
                self._catalog.delete_backup(backup.id, connection=conn)
        except StoreFailure:
            LOGGER.error(
                "Restore of backup #%s failed; restored %s was rolled back",
                backup.id,
                info.key,
            )
            raise

        if backup.has_image:
            staged_key = deleted_image_key(info.key, backup.original_id)
            try:
                if self._blobs.exists(staged_key):
                    self._blobs.move(staged_key, image_key(info.key, new_id))
            except StoreFailure as error:
                LOGGER.warning("Could not restore image for backup #%s: %s", backup.id, error)

        payload: Dict[str, Any] = {
            "backup_id": backup.id,
            "entity": f"{info.key}#{new_id}",
            "original_id": backup.original_id,
            "links": len(rows),
        }
        emit_catalog_event("restore", payload=payload)
        return new_id

    def discard(self, backup_id: int) -> None:
        """Permanently drop a backup and its staged image."""

        backup = self._catalog.get_backup(backup_id)
        if backup is None:
            raise NotFoundError("Not found")

        if backup.has_image:
            staged_key = deleted_image_key(backup.entity_type, backup.original_id)
            try:
                if self._blobs.exists(staged_key):
                    self._blobs.delete(staged_key)
            except StoreFailure as error:
                LOGGER.warning("Could not delete staged image %s: %s", staged_key, error)

        self._catalog.delete_backup(backup.id)
        emit_catalog_event("discard_backup", payload={"backup_id": backup.id})


__all__ = ["RecoveryService"]
