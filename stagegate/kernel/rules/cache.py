"""
Epoch-versioned memoization of rule resolution.

A generation holds every cached answer computed against one RuleIndex.
When the registry's epoch moves, the whole generation is dropped; entries
are never reconciled individually.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from stagegate.kernel.rules.registry import ResourceRef, RuleIndex, RuleRegistry
from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import StageId

_MISS = object()


@dataclass
class _Generation:
    epoch: int
    entries: "OrderedDict[Tuple, Optional[StageId]]" = field(default_factory=OrderedDict)
    tables: Dict[ResourceKind, Dict[str, StageId]] = field(default_factory=dict)


@dataclass
class CacheStats:
    epoch: int
    size: int
    hits: int
    misses: int
    evictions: int
    generations: int


class ResolutionCache:
    """Bounded cache in front of a RuleRegistry."""

    def __init__(self, registry: RuleRegistry, max_entries: int = 4096):
        self.registry = registry
        self.max_entries = max(1, max_entries)
        self._generation = _Generation(epoch=-1)
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.generations = 0

    def _current(self) -> Tuple[RuleIndex, _Generation]:
        index = self.registry.current()
        generation = self._generation
        if generation.epoch != index.epoch:
            generation = _Generation(epoch=index.epoch)
            self._generation = generation
            self.generations += 1
        return index, generation

    def _memo(self, generation: _Generation, key: Tuple, compute) -> Optional[StageId]:
        cached = generation.entries.get(key, _MISS)
        if cached is not _MISS:
            self.hits += 1
            generation.entries.move_to_end(key)
            return cached
        self.misses += 1
        value = compute()
        generation.entries[key] = value
        if len(generation.entries) > self.max_entries:
            generation.entries.popitem(last=False)
            self.evictions += 1
        return value

    def resolve(self, kind: ResourceKind, ref: ResourceRef) -> Optional[StageId]:
        kind = ResourceKind(kind)
        index, generation = self._current()
        resource = index.lookup(kind, ref)
        if resource is None:
            return None
        key = ("r", kind, resource.id, resource.tags)
        return self._memo(generation, key, lambda: index.resolve_resource(resource))

    def resolve_interaction(
        self,
        interaction_type: str,
        held: Optional[str] = None,
        target: Optional[str] = None,
    ) -> Optional[StageId]:
        index, generation = self._current()
        key = ("i", interaction_type, held, target)
        return self._memo(generation, key, lambda: index.resolve_interaction(interaction_type, held, target))

    def resolve_all(self, kind: ResourceKind) -> Dict[str, StageId]:
        """Whole-catalog table for kind, materialized once per generation."""
        kind = ResourceKind(kind)
        index, generation = self._current()
        table = generation.tables.get(kind)
        if table is None:
            self.misses += 1
            table = index.resolve_all(kind)
            generation.tables[kind] = table
        else:
            self.hits += 1
        return dict(table)

    def invalidate(self) -> None:
        self._generation = _Generation(epoch=-1)

    def stats(self) -> CacheStats:
        generation = self._generation
        return CacheStats(
            epoch=generation.epoch,
            size=len(generation.entries),
            hits=self.hits,
            misses=self.misses,
            evictions=self.evictions,
            generations=self.generations,
        )
