from __future__ import annotations
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional

from .records import ObjectRecord


@dataclass(frozen=True)
class TargetSet:
    sharks: FrozenSet[str]
    min_copies: Optional[int] = None
    match_all: bool = False

    @classmethod
    def of(cls, sharks: Iterable[str], min_copies: Optional[int] = None) -> "TargetSet":
        return cls(frozenset(sharks), min_copies)

    @classmethod
    def everything(cls, min_copies: Optional[int] = None) -> "TargetSet":
        """Target set for duplicate-only runs: every record matches, no shark routing."""
        return cls(frozenset(), min_copies, match_all=True)


@dataclass(frozen=True)
class MatchResult:
    shard: int
    shark: Optional[str]
    record: ObjectRecord

    @property
    def object_id(self) -> str:
        return self.record.object_id


def match_record(record: ObjectRecord, targets: TargetSet, shard: int) -> List[MatchResult]:
    """Classify one record against the target set.

    Returns one result per requested shark the record lists (each shark at most
    once, in the record's order). A match-all target set yields a single result
    with no shark. Records below the minimum copy count never match.
    """
    if targets.min_copies is not None and len(record.sharks) < targets.min_copies:
        return []
    if targets.match_all:
        return [MatchResult(shard, None, record)]

    results: List[MatchResult] = []
    seen = set()
    for shark_id in record.shark_ids:
        if shark_id in targets.sharks and shark_id not in seen:
            seen.add(shark_id)
            results.append(MatchResult(shard, shark_id, record))
    return results


__all__ = ["MatchResult", "TargetSet", "match_record"]
