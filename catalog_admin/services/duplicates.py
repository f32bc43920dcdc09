"""Exact and fuzzy duplicate detection across catalog entity types."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Set, Tuple

from rapidfuzz.distance import Levenshtein

from .blobs import BlobStore, list_image_ids
from .catalog import LINKABLE_TYPES, CatalogRepository
from .errors import StoreFailure


LOGGER = logging.getLogger(__name__)

FUZZY_THRESHOLD = 0.80
CONTAINMENT_SCORE = 0.85
SHARED_LAST_TOKEN_SCORE = 0.82
_MIN_SIGNIFICANT_LENGTH = 4

# Scan order of entity types; the first member found names its group.
DETECTION_ORDER: Tuple[str, ...] = (
    "directors",
    "writers",
    "philosophers",
    "films",
    "books",
    "painters",
    "paintings",
)


def normalize_name(value: str) -> str:
    return (value or "").strip().casefold()


def name_similarity(left: str, right: str) -> float:
    """Score how alike two display names are, between 0 and 1."""

    a = normalize_name(left)
    b = normalize_name(right)
    if a == b:
        return 1.0

    if (a in b or b in a) and min(len(a), len(b)) >= _MIN_SIGNIFICANT_LENGTH:
        return CONTAINMENT_SCORE

    last_a = a.split()[-1] if a.split() else a
    last_b = b.split()[-1] if b.split() else b
    if len(last_a) >= _MIN_SIGNIFICANT_LENGTH and last_a == last_b:
        return SHARED_LAST_TOKEN_SCORE

    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def group_signature(name: str, types: Iterable[str]) -> str:
    """Return the merge-history key of a group."""

    return f"{normalize_name(name)}|{','.join(sorted(types))}"


def custom_signature(keep_type: str, keep_id: int, delete_type: str, delete_id: int) -> str:
    """Return the merge-history key of a merge started outside a detected group."""

    return f"custom:{keep_type}:{keep_id}:{delete_type}:{delete_id}"


@dataclass
class DuplicateEntity:
    id: int
    type: str
    display_name: str
    hebrew_name: str | None = None
    connection_count: int = 0
    has_image: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.type, self.id)


@dataclass
class DuplicateGroup:
    name: str
    entities: List[DuplicateEntity]
    match_type: str
    similarity: float

    @property
    def signature(self) -> str:
        return group_signature(self.name, (entity.type for entity in self.entities))


@dataclass
class DuplicateReport:
    exact: List[DuplicateGroup] = field(default_factory=list)
    similar: List[DuplicateGroup] = field(default_factory=list)

    def groups(self) -> List[Tuple[str, DuplicateGroup]]:
        return [("exact", group) for group in self.exact] + [
            ("similar", group) for group in self.similar
        ]


class _DisjointSet:
    def __init__(self, size: int) -> None:
        self._parent = list(range(size))

    def find(self, index: int) -> int:
        while self._parent[index] != index:
            self._parent[index] = self._parent[self._parent[index]]
            index = self._parent[index]
        return index

    def union(self, left: int, right: int) -> None:
        root_left = self.find(left)
        root_right = self.find(right)
        if root_left == root_right:
            return
        # The smaller index stays the root so groups keep detection order.
        if root_left < root_right:
            self._parent[root_right] = root_left
        else:
            self._parent[root_left] = root_right


class DuplicateDetector:
    """Compute duplicate groups from the current catalog and bucket state."""

    def __init__(
        self,
        catalog: CatalogRepository,
        blobs: BlobStore,
        *,
        threshold: float = FUZZY_THRESHOLD,
    ) -> None:
        self._catalog = catalog
        self._blobs = blobs
        self._threshold = threshold

    def _image_ids(self, entity_type: str) -> Set[int]:
        try:
            return list_image_ids(self._blobs, entity_type)
        except StoreFailure as error:
            LOGGER.warning("Could not list %s images: %s", entity_type, error)
            return set()

    def load_entities(self) -> List[DuplicateEntity]:
        """Return every linkable entity enriched with link counts and image flags."""

        entities: List[DuplicateEntity] = []
        for entity_type in DETECTION_ORDER:
            if entity_type not in LINKABLE_TYPES:
                continue
            counts = self._catalog.connection_counts(entity_type)
            images = self._image_ids(entity_type)
            for record in self._catalog.list_entities(entity_type):
                entities.append(
                    DuplicateEntity(
                        id=record.id,
                        type=entity_type,
                        display_name=record.display_name,
                        hebrew_name=record.hebrew_name,
                        connection_count=counts.get(record.id, 0),
                        has_image=record.id in images,
                    )
                )
        return entities

    def detect(self) -> DuplicateReport:
        entities = self.load_entities()
        report = DuplicateReport()

        by_name: Dict[str, List[DuplicateEntity]] = {}
        for entity in entities:
            by_name.setdefault(normalize_name(entity.display_name), []).append(entity)

        exact_keys: Set[Tuple[str, int]] = set()
        for members in by_name.values():
            if len(members) < 2:
                continue
            report.exact.append(
                DuplicateGroup(
                    name=members[0].display_name,
                    entities=list(members),
                    match_type="exact",
                    similarity=1.0,
                )
            )
            exact_keys.update(member.key for member in members)

        candidates = [entity for entity in entities if entity.key not in exact_keys]
        report.similar = self._similar_groups(candidates)

        LOGGER.debug(
            "Detected %s exact and %s similar duplicate groups across %s entities",
            len(report.exact),
            len(report.similar),
            len(entities),
        )
        return report

    def _similar_groups(self, candidates: List[DuplicateEntity]) -> List[DuplicateGroup]:
        components = _DisjointSet(len(candidates))
        scores: Dict[Tuple[int, int], float] = {}
        for i in range(len(candidates)):
            for j in range(i + 1, len(candidates)):
                score = name_similarity(candidates[i].display_name, candidates[j].display_name)
                if self._threshold <= score < 1.0:
                    components.union(i, j)
                    scores[(i, j)] = score

        members: Dict[int, List[int]] = {}
        for index in range(len(candidates)):
            members.setdefault(components.find(index), []).append(index)

        best: Dict[int, float] = {}
        for (i, _j), score in scores.items():
            root = components.find(i)
            best[root] = max(best.get(root, 0.0), score)

        groups: List[DuplicateGroup] = []
        for root in sorted(members):
            indexes = members[root]
            if len(indexes) < 2:
                continue
            groups.append(
                DuplicateGroup(
                    name=candidates[indexes[0]].display_name,
                    entities=[candidates[index] for index in indexes],
                    match_type="similar",
                    similarity=best[root],
                )
            )
        return groups


__all__ = [
    "DETECTION_ORDER",
    "DuplicateDetector",
    "DuplicateEntity",
    "DuplicateGroup",
    "DuplicateReport",
    "FUZZY_THRESHOLD",
    "custom_signature",
    "group_signature",
    "name_similarity",
    "normalize_name",
]
