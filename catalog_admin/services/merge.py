"""Merge duplicate entities and move entities between types."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .blobs import BlobStore, image_key
from .catalog import CatalogRepository, JunctionRecord, resolve_entity_type
from .errors import NotFoundError, StoreFailure, ValidationError
from .events import emit_catalog_event


LOGGER = logging.getLogger(__name__)


@dataclass
class MergeResult:
    merged: bool
    relinked: int = 0
    dropped: int = 0
    image_copied: bool = False


def _first_per_lecture(links: List[JunctionRecord]) -> List[JunctionRecord]:
    seen = set()
    unique: List[JunctionRecord] = []
    for link in links:
        if link.lecture_id in seen:
            continue
        seen.add(link.lecture_id)
        unique.append(link)
    return unique


class MergeEngine:
    """Fold one entity into another and reclassify entities across types."""

    def __init__(self, catalog: CatalogRepository, blobs: BlobStore) -> None:
        self._catalog = catalog
        self._blobs = blobs

    def merge(self, keep_id: int, keep_type: str, delete_id: int, delete_type: str) -> MergeResult:
        """Move the loser's lecture links onto the keeper and delete the loser.

        Calling it again after a successful merge is a no-op because the
        loser no longer exists.
        """

        keep_info = resolve_entity_type(keep_type)
        delete_info = resolve_entity_type(delete_type)
        if keep_info.key == delete_info.key and int(keep_id) == int(delete_id):
            raise ValidationError("Cannot merge an entity with itself")

        relinked = 0
        dropped = 0
        with self._catalog.transaction(immediate=True) as conn:
            loser = self._catalog.get_entity(delete_info.key, delete_id, connection=conn)
            if loser is None:
                LOGGER.info(
                    "Merge skipped: %s #%s no longer exists", delete_info.key, delete_id
                )
                return MergeResult(merged=False)
            self._catalog.require_entity(keep_info.key, keep_id, connection=conn)

            loser_links = self._catalog.list_links(delete_info.key, delete_id, connection=conn)
            if keep_info.linkable and delete_info.linkable:
                covered = {
                    link.lecture_id
                    for link in self._catalog.list_links(keep_info.key, keep_id, connection=conn)
                }
                duplicates = [link for link in loser_links if link.lecture_id in covered]
                remaining = _first_per_lecture(
                    [link for link in loser_links if link.lecture_id not in covered]
                )
                if keep_info.junction_table == delete_info.junction_table:
                    dropped = self._catalog.delete_links(
                        delete_info.key, [link.id for link in duplicates], connection=conn
                    )
                    relinked = self._catalog.repoint_links(
                        delete_info.key, [link.id for link in remaining], keep_id, connection=conn
                    )
                else:
                    relinked = self._catalog.insert_links(
                        keep_info.key,
                        keep_id,
                        [(link.lecture_id, link.relationship_type) for link in remaining],
                        connection=conn,
                    )
                    self._catalog.delete_entity_links(delete_info.key, delete_id, connection=conn)
                    dropped = len(loser_links) - relinked
            elif loser_links:
                dropped = self._catalog.delete_entity_links(
                    delete_info.key, delete_id, connection=conn
                )
                LOGGER.warning(
                    "%s has no lecture links; dropped %s links of %s #%s",
                    keep_info.key,
                    dropped,
                    delete_info.key,
                    delete_id,
                )

            self._catalog.delete_entity(delete_info.key, delete_id, connection=conn)

        image_copied = self._reconcile_images(keep_info.key, keep_id, delete_info.key, delete_id)
        emit_catalog_event(
            "merge",
            payload={
                "keep": f"{keep_info.key}#{keep_id}",
                "delete": f"{delete_info.key}#{delete_id}",
                "relinked": relinked,
                "dropped": dropped,
                "image_copied": image_copied,
            },
        )
        return MergeResult(
            merged=True, relinked=relinked, dropped=dropped, image_copied=image_copied
        )

    def _reconcile_images(
        self, keep_type: str, keep_id: int, delete_type: str, delete_id: int
    ) -> bool:
        delete_key = image_key(delete_type, delete_id)
        keep_key = image_key(keep_type, keep_id)
        copied = False
        try:
            loser_has_image = self._blobs.exists(delete_key)
            keeper_has_image = self._blobs.exists(keep_key)
            if loser_has_image and not keeper_has_image:
                self._blobs.copy(delete_key, keep_key)
                copied = True
            if loser_has_image:
                self._blobs.delete(delete_key)
        except StoreFailure as error:
            LOGGER.warning("Image reconciliation after merge failed: %s", error)
        return copied

    def reclassify(self, entity_id: int, from_type: str, to_type: str) -> int:
        """Re-create an entity under another type and return its new id."""

        from_info = resolve_entity_type(from_type)
        to_info = resolve_entity_type(to_type)
        if from_info.key == to_info.key:
            raise ValidationError("Source and target types must differ")

        with self._catalog.transaction(immediate=True) as conn:
            source = self._catalog.get_entity(from_info.key, entity_id, connection=conn)
            if source is None:
                raise NotFoundError("Entity not found")

            new_id = self._catalog.add_entity(
                to_info.key,
                source.display_name,
                hebrew_name=source.hebrew_name,
                description=source.description,
                connection=conn,
            )

            links = self._catalog.list_links(from_info.key, entity_id, connection=conn)
            if links and to_info.linkable:
                rows: List[Tuple[int, str]] = [
                    (link.lecture_id, link.relationship_type)
                    for link in _first_per_lecture(links)
                ]
                self._catalog.insert_links(to_info.key, new_id, rows, connection=conn)
            elif links:
                LOGGER.warning(
                    "%s has no lecture links; dropping %s links of %s #%s",
                    to_info.key,
                    len(links),
                    from_info.key,
                    entity_id,
                )
            self._catalog.delete_entity_links(from_info.key, entity_id, connection=conn)
            self._catalog.delete_entity(from_info.key, entity_id, connection=conn)

        source_key = image_key(from_info.key, entity_id)
        try:
            if self._blobs.exists(source_key):
                self._blobs.move(source_key, image_key(to_info.key, new_id))
        except StoreFailure as error:
            LOGGER.warning("Image move after reclassify failed: %s", error)

        payload: Dict[str, object] = {
            "from": f"{from_info.key}#{entity_id}",
            "to": f"{to_info.key}#{new_id}",
            "links": len(links),
        }
        emit_catalog_event("reclassify", payload=payload)
        return new_id


__all__ = ["MergeEngine", "MergeResult"]
