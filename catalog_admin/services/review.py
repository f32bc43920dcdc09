"""Duplicate review: history filtering, replay of approved merges and manual merges."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .duplicates import DuplicateDetector, DuplicateGroup, custom_signature
from .errors import CatalogError
from .history import MergeHistory
from .merge import MergeEngine, MergeResult


LOGGER = logging.getLogger(__name__)


@dataclass
class AutoMergeOutcome:
    signature: str
    keep_type: str
    keep_id: Optional[int]
    merged: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ReviewResult:
    exact: List[DuplicateGroup] = field(default_factory=list)
    similar: List[DuplicateGroup] = field(default_factory=list)
    auto_merged: List[AutoMergeOutcome] = field(default_factory=list)
    has_history: bool = False


class DuplicateReviewer:
    """Combine fresh detection with the recorded operator decisions."""

    def __init__(
        self,
        detector: DuplicateDetector,
        engine: MergeEngine,
        history: MergeHistory,
    ) -> None:
        self._detector = detector
        self._engine = engine
        self._history = history

    def review(self, *, auto_merge: bool = True) -> ReviewResult:
        """Return the groups that still need a decision.

        Declined groups are hidden. Approved groups are hidden too and, unless
        ``auto_merge`` is false, merged again with the recorded keeper type.
        """

        entries = self._history.list()
        approved: Dict[str, str] = {}
        declined: Set[str] = set()
        for entry in entries:
            if entry.action == "approved" and entry.keep_type:
                approved[entry.group_sig] = entry.keep_type
            elif entry.action == "declined":
                declined.add(entry.group_sig)

        report = self._detector.detect()
        result = ReviewResult(has_history=bool(entries))
        for section, group in report.groups():
            signature = group.signature
            if signature in declined:
                continue
            if signature in approved:
                if auto_merge:
                    result.auto_merged.append(self._replay(group, approved[signature]))
                continue
            getattr(result, section).append(group)

        merged_count = sum(1 for outcome in result.auto_merged if outcome.merged)
        if merged_count:
            LOGGER.info("Auto-merged %s previously approved groups", merged_count)
        return result

    def _replay(self, group: DuplicateGroup, keep_type: str) -> AutoMergeOutcome:
        keeper = next((entity for entity in group.entities if entity.type == keep_type), None)
        outcome = AutoMergeOutcome(
            signature=group.signature,
            keep_type=keep_type,
            keep_id=keeper.id if keeper else None,
        )
        if keeper is None:
            LOGGER.warning(
                "Approved group %s has no %s member; leaving it untouched",
                group.signature,
                keep_type,
            )
            return outcome

        for entity in group.entities:
            if entity.key == keeper.key:
                continue
            label = f"{entity.type}#{entity.id}"
            try:
                self._engine.merge(keeper.id, keeper.type, entity.id, entity.type)
            except CatalogError as error:
                LOGGER.warning("Auto-merge of %s into %s failed: %s", label, keeper.key, error)
                outcome.errors.append(f"{label}: {error}")
                continue
            outcome.merged.append(label)
        return outcome

    def merge(
        self,
        keep_id: int,
        keep_type: str,
        delete_id: int,
        delete_type: str,
        *,
        group_sig: Optional[str] = None,
    ) -> MergeResult:
        """Merge two entities and remember the decision.

        Without a ``group_sig`` the merge is recorded under a signature
        built from both entity keys.
        """

        result = self._engine.merge(keep_id, keep_type, delete_id, delete_type)
        signature = group_sig or custom_signature(keep_type, keep_id, delete_type, delete_id)
        self._history.record(signature, "approved", keep_type)
        return result

    def decline(self, group_sig: str) -> None:
        self._history.record(group_sig, "declined")


__all__ = ["AutoMergeOutcome", "DuplicateReviewer", "ReviewResult"]
