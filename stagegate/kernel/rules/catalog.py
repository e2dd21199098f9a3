"""
Catalog of known resources.

The catalog is the set of resources a bulk resolution enumerates. Point
queries do not require a resource to be catalogued; an unknown id simply
has no tag memberships.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from stagegate.kernel.stages.definitions import ResourceKind
from stagegate.kernel.stages.stage_id import normalize_resource_id, try_normalize_resource_id
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


def normalize_tag(raw: str) -> Optional[str]:
    """Tags are written with or without a leading '#'."""
    value = raw.strip()
    if value.startswith("#"):
        value = value[1:]
    return try_normalize_resource_id(value)


@dataclass(frozen=True)
class Resource:
    """A typed, namespaced resource and the tags it belongs to."""

    kind: ResourceKind
    id: str
    tags: frozenset = field(default_factory=frozenset)

    @classmethod
    def of(cls, kind, resource_id: str, tags: Iterable[str] = ()) -> "Resource":
        """Build a normalized resource. Raises InvalidStageId on a bad id."""
        normalized_tags = frozenset(t for t in (normalize_tag(raw) for raw in tags) if t)
        return cls(ResourceKind(kind), normalize_resource_id(resource_id), normalized_tags)

    @property
    def namespace(self) -> str:
        return self.id.partition(":")[0]


CatalogListener = Callable[[], None]


class ResourceCatalog:
    """Mutable registry of resources, grouped by kind."""

    def __init__(self, resources: Iterable[Resource] = ()):
        self._by_kind: Dict[ResourceKind, Dict[str, Resource]] = {kind: {} for kind in ResourceKind}
        self._listeners: List[CatalogListener] = []
        for resource in resources:
            self._by_kind[resource.kind][resource.id] = resource

    def subscribe(self, listener: CatalogListener) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        for listener in list(self._listeners):
            listener()

    def add(self, resource: Resource) -> None:
        self.add_all([resource])

    def add_all(self, resources: Iterable[Resource]) -> int:
        count = 0
        for resource in resources:
            updated = dict(self._by_kind[resource.kind])
            updated[resource.id] = resource
            self._by_kind[resource.kind] = updated
            count += 1
        if count:
            logger.debug("Catalog updated", extra={"added": count})
            self._changed()
        return count

    def remove(self, kind: ResourceKind, resource_id: str) -> bool:
        normalized = try_normalize_resource_id(resource_id)
        current = self._by_kind[ResourceKind(kind)]
        if normalized not in current:
            return False
        updated = dict(current)
        del updated[normalized]
        self._by_kind[ResourceKind(kind)] = updated
        self._changed()
        return True

    def get(self, kind: ResourceKind, resource_id: str) -> Optional[Resource]:
        normalized = try_normalize_resource_id(resource_id)
        if normalized is None:
            return None
        return self._by_kind[ResourceKind(kind)].get(normalized)

    def resources(self, kind: ResourceKind) -> List[Resource]:
        return list(self._by_kind[ResourceKind(kind)].values())

    def snapshot(self) -> Dict[ResourceKind, Dict[str, Resource]]:
        """Point-in-time view; inner dicts are never mutated after publication."""
        return dict(self._by_kind)

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_kind.values())
