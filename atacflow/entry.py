# atacflow/entry.py
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from atacflow.errors import ConfigError


class EntryType(Enum):
    """Data type a run starts from. Declaration order is the tie-break priority."""

    READS = "fastqs"
    ALIGNED = "bams"
    DEDUPLICATED = "nodup_bams"
    FRAGMENTS = "tas"

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class Entry:
    entry_type: EntryType
    replicate_count: int


def resolve_entry(
    fastqs: Optional[Sequence[Any]] = None,
    bams: Optional[Sequence[Any]] = None,
    nodup_bams: Optional[Sequence[Any]] = None,
    tas: Optional[Sequence[Any]] = None,
    *,
    total_cpu: int = 1,
) -> Entry:
    """
    Replicate count is the longest of the four input collections; the entry
    type is the first collection (reads, aligned, deduplicated, fragments)
    with that length.

    Raises ConfigError when there is no input at all, when `total_cpu` cannot
    be split evenly across replicates, or when a replicate of the chosen
    collection is empty (mixed entry points are not supported).
    """
    collections = {
        EntryType.READS: list(fastqs or []),
        EntryType.ALIGNED: list(bams or []),
        EntryType.DEDUPLICATED: list(nodup_bams or []),
        EntryType.FRAGMENTS: list(tas or []),
    }
    count = max(len(c) for c in collections.values())
    if count == 0:
        raise ConfigError("no input data: fastqs, bams, nodup_bams and tas are all empty")

    entry_type = next(t for t in EntryType if len(collections[t]) == count)

    empty = [i + 1 for i, rep in enumerate(collections[entry_type]) if not rep]
    if empty:
        raise ConfigError(
            f"{entry_type.value}: replicate(s) {empty} have no input; "
            "mixing entry points across replicates is not supported"
        )
    if total_cpu <= 0 or total_cpu % count != 0:
        raise ConfigError(f"cpu={total_cpu} is not evenly divisible by {count} replicate(s)")
    return Entry(entry_type, count)


def replicate_pairs(n: int) -> List[Tuple[int, int]]:
    """All (i, j), i < j, 0-indexed, in row-major order. Empty for n < 2."""
    return [(i, j) for i in range(n) for j in range(i + 1, n)]


def pair_label(i: int, j: int) -> str:
    return f"rep{i + 1}-rep{j + 1}"
