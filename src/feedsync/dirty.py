"""Staging of unflushed mutations between commits."""

import itertools
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Literal

from .models import Abstract

READ = "read"
FAVORITE = "favorite"


@dataclass
class Mutation:
    """Pending change of one abstract; ``fields`` accumulates across coalesced marks."""

    abstract_id: str
    fields: frozenset[str]
    seq: int


@dataclass(frozen=True)
class StructuralChange:
    kind: Literal["add", "remove"]
    feed_url: str


@dataclass
class Snapshot:
    """Copy of the pending set taken at the start of a commit."""

    mutations: dict[str, Mutation] = field(default_factory=dict)
    structural: dict[str, tuple[StructuralChange, int]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.mutations or self.structural)


class DirtyTracker:
    """Tracks abstracts and feeds whose persisted or upstream copy is stale.

    Every mark gets a fresh sequence number. ``clear`` only drops entries whose
    sequence number still matches the snapshot, so anything marked while a
    commit is in flight stays pending for the next one.
    """

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self._mutations: dict[str, Mutation] = {}
        self._structural: dict[str, tuple[StructuralChange, int]] = {}

    def __len__(self) -> int:
        return len(self._mutations) + len(self._structural)

    def __contains__(self, abstract_id: str) -> bool:
        return abstract_id in self._mutations

    def mark_mutated(self, abstract: Abstract, *fields: str) -> None:
        pending = self._mutations.get(abstract.id)
        merged = frozenset(fields or (READ, FAVORITE))
        if pending is not None:
            merged |= pending.fields
        self._mutations[abstract.id] = Mutation(abstract.id, merged, next(self._seq))

    def mark_structural(self, change: StructuralChange) -> None:
        self._structural[change.feed_url] = (change, next(self._seq))

    def pending_removal(self, feed_url: str) -> bool:
        entry = self._structural.get(feed_url)
        return entry is not None and entry[0].kind == "remove"

    def snapshot(self) -> Snapshot:
        return Snapshot(dict(self._mutations), dict(self._structural))

    def clear(self, snapshot: Snapshot, failed: Iterable[str] | Mapping[str, object] = ()) -> None:
        """Drop what ``snapshot`` flushed, keeping failures and newer marks."""
        failed = set(failed)
        for key, mutation in snapshot.mutations.items():
            current = self._mutations.get(key)
            if key not in failed and current is not None and current.seq == mutation.seq:
                del self._mutations[key]
        for key, (_, seq) in snapshot.structural.items():
            current = self._structural.get(key)
            if key not in failed and current is not None and current[1] == seq:
                del self._structural[key]

    def discard(self, ids: Iterable[str]) -> None:
        """Forget mutations of abstracts that no longer exist."""
        for abstract_id in ids:
            self._mutations.pop(abstract_id, None)
