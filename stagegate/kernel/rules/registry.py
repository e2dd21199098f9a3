"""
Rule registry and layered lock resolution.

Every mutation compiles a new immutable RuleIndex from the registered
stage definitions and the current catalog, then swaps it in together
with a bumped epoch. Resolution is a pure function of (resource, index).

Resolution precedence, first match wins:
    1. whitelist exact id      -> unrestricted
    2. direct id lock
    3. tag lock                 (earliest registered tag wins)
    4. kind-scoped namespace lock
    5. global namespace lock
    6. name substring pattern   (registration order)
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from stagegate.kernel.rules.catalog import Resource, ResourceCatalog, normalize_tag
from stagegate.kernel.stages.definitions import (
    InteractionRule,
    ResourceKind,
    StageDefinition,
    interaction_key,
)
from stagegate.kernel.stages.stage_id import StageId, try_normalize_resource_id
from stagegate.logging_config import get_logger

logger = get_logger(__name__)

ResourceRef = Union[Resource, str]

_EMPTY: Mapping = MappingProxyType({})


def _normalize_pattern(raw: str) -> str:
    if raw in ("", "*") or raw.startswith("#"):
        return raw or "*"
    return try_normalize_resource_id(raw) or raw.lower()


@dataclass(frozen=True)
class RuleIndex:
    """Compiled, immutable lookup tables for one registry generation."""

    epoch: int
    whitelist: Mapping[ResourceKind, frozenset] = field(default_factory=dict)
    ids: Mapping[ResourceKind, Mapping[str, StageId]] = field(default_factory=dict)
    tags: Mapping[ResourceKind, Mapping[str, Tuple[int, StageId]]] = field(default_factory=dict)
    kind_namespaces: Mapping[ResourceKind, Mapping[str, StageId]] = field(default_factory=dict)
    global_namespaces: Mapping[str, StageId] = field(default_factory=dict)
    names: Tuple[Tuple[str, StageId], ...] = ()
    exact_interactions: Mapping[str, StageId] = field(default_factory=dict)
    pattern_interactions: Tuple[Tuple[InteractionRule, StageId], ...] = ()
    catalog: Mapping[ResourceKind, Mapping[str, Resource]] = field(default_factory=dict)
    stages: Tuple[StageId, ...] = ()

    def lookup(self, kind: ResourceKind, ref: ResourceRef) -> Optional[Resource]:
        """Turn a reference into a Resource, or None for a malformed id."""
        if isinstance(ref, Resource):
            return ref
        normalized = try_normalize_resource_id(ref)
        if normalized is None:
            return None
        known = self.catalog.get(kind, _EMPTY).get(normalized)
        return known or Resource(kind, normalized, frozenset())

    def resolve(self, kind: ResourceKind, ref: ResourceRef) -> Optional[StageId]:
        kind = ResourceKind(kind)
        resource = self.lookup(kind, ref)
        if resource is None:
            return None
        return self.resolve_resource(resource)

    def resolve_resource(self, resource: Resource) -> Optional[StageId]:
        kind = resource.kind
        rid = resource.id

        if rid in self.whitelist.get(kind, ()):
            return None

        stage = self.ids.get(kind, _EMPTY).get(rid)
        if stage is not None:
            return stage

        tag_locks = self.tags.get(kind, _EMPTY)
        if tag_locks and resource.tags:
            best = None
            for tag in resource.tags:
                hit = tag_locks.get(tag)
                if hit is not None and (best is None or hit[0] < best[0]):
                    best = hit
            if best is not None:
                return best[1]

        namespace = resource.namespace
        stage = self.kind_namespaces.get(kind, _EMPTY).get(namespace)
        if stage is not None:
            return stage

        stage = self.global_namespaces.get(namespace)
        if stage is not None:
            return stage

        for pattern, stage in self.names:
            if pattern in rid:
                return stage
        return None

    def resolve_all(self, kind: ResourceKind) -> Dict[str, StageId]:
        """Resource id -> required stage for every catalogued resource of kind."""
        kind = ResourceKind(kind)
        table: Dict[str, StageId] = {}
        for rid, resource in self.catalog.get(kind, _EMPTY).items():
            stage = self.resolve_resource(resource)
            if stage is not None:
                table[rid] = stage
        return table

    def resolve_interaction(
        self,
        interaction_type: str,
        held: Optional[str] = None,
        target: Optional[str] = None,
    ) -> Optional[StageId]:
        held_id = try_normalize_resource_id(held) if held else None
        target_id = try_normalize_resource_id(target) if target else None
        stage = self.exact_interactions.get(interaction_key(interaction_type, held_id, target_id))
        if stage is not None:
            return stage
        for rule, stage in self.pattern_interactions:
            if rule.matches(interaction_type, held_id, target_id):
                return stage
        return None


class _IndexBuilder:
    """Accumulates rules from definitions in registration order."""

    def __init__(self):
        self.whitelist: Dict[ResourceKind, set] = {}
        self.ids: Dict[ResourceKind, Dict[str, StageId]] = {}
        self.tags: Dict[ResourceKind, Dict[str, Tuple[int, StageId]]] = {}
        self.kind_namespaces: Dict[ResourceKind, Dict[str, StageId]] = {}
        self.global_namespaces: Dict[str, StageId] = {}
        self.names: List[Tuple[str, StageId]] = []
        self.exact_interactions: Dict[str, StageId] = {}
        self.pattern_interactions: List[Tuple[InteractionRule, StageId]] = []
        self._tag_order = 0

    def _set_last_wins(self, table: Dict[str, StageId], key: str, stage: StageId, layer: str) -> None:
        previous = table.get(key)
        if previous is not None and previous != stage:
            logger.warning(
                "Conflicting lock, later stage wins",
                extra={"layer": layer, "key": key, "previous": str(previous), "stage": str(stage)},
            )
        table[key] = stage

    def add(self, definition: StageDefinition) -> None:
        stage = definition.id
        rules = definition.rules

        for kind, kind_rules in rules.kinds.items():
            for raw in kind_rules.unlocked:
                rid = try_normalize_resource_id(raw)
                if rid is None:
                    logger.warning("Skipping invalid whitelist id", extra={"stage": str(stage), "value": raw})
                    continue
                self.whitelist.setdefault(kind, set()).add(rid)

            for raw in kind_rules.ids:
                rid = try_normalize_resource_id(raw)
                if rid is None:
                    logger.warning("Skipping invalid lock id", extra={"stage": str(stage), "value": raw})
                    continue
                self._set_last_wins(self.ids.setdefault(kind, {}), rid, stage, f"{kind.value}.id")

            for raw in kind_rules.tags:
                tag = normalize_tag(raw)
                if tag is None:
                    logger.warning("Skipping invalid tag", extra={"stage": str(stage), "value": raw})
                    continue
                table = self.tags.setdefault(kind, {})
                if tag not in table:
                    table[tag] = (self._tag_order, stage)
                    self._tag_order += 1

            for namespace in kind_rules.namespaces:
                self._set_last_wins(
                    self.kind_namespaces.setdefault(kind, {}), namespace, stage, f"{kind.value}.namespace"
                )

        for namespace in rules.namespaces:
            self._set_last_wins(self.global_namespaces, namespace, stage, "namespace")

        for pattern in rules.names:
            if all(existing != pattern for existing, _ in self.names):
                self.names.append((pattern, stage))

        for rule in rules.interactions:
            held = _normalize_pattern(rule.held)
            target = _normalize_pattern(rule.target)
            normalized = rule.model_copy(update={"held": held, "target": target})
            if _is_concrete(held) and _is_concrete(target):
                self._set_last_wins(self.exact_interactions, normalized.key, stage, "interaction")
            else:
                self.pattern_interactions.append((normalized, stage))

    def build(self, epoch: int, catalog: Mapping, stages: Iterable[StageId]) -> RuleIndex:
        return RuleIndex(
            epoch=epoch,
            whitelist=MappingProxyType({k: frozenset(v) for k, v in self.whitelist.items()}),
            ids=MappingProxyType({k: MappingProxyType(v) for k, v in self.ids.items()}),
            tags=MappingProxyType({k: MappingProxyType(v) for k, v in self.tags.items()}),
            kind_namespaces=MappingProxyType({k: MappingProxyType(v) for k, v in self.kind_namespaces.items()}),
            global_namespaces=MappingProxyType(dict(self.global_namespaces)),
            names=tuple(self.names),
            exact_interactions=MappingProxyType(dict(self.exact_interactions)),
            pattern_interactions=tuple(self.pattern_interactions),
            catalog=MappingProxyType(dict(catalog)),
            stages=tuple(stages),
        )


def _is_concrete(pattern: str) -> bool:
    return pattern not in ("", "*") and not pattern.startswith("#")


EpochListener = Callable[[RuleIndex], None]


@dataclass
class RuleRegistry:
    """
    Owner of the active RuleIndex.

    Instances are constructed and injected by the application context;
    there is no module-level registry.
    """

    catalog: ResourceCatalog = field(default_factory=ResourceCatalog)
    _definitions: List[StageDefinition] = field(default_factory=list, init=False)
    _index: RuleIndex = field(default_factory=lambda: RuleIndex(epoch=0), init=False)
    _listeners: List[EpochListener] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self.catalog.subscribe(self._rebuild)
        self._rebuild()

    @property
    def epoch(self) -> int:
        return self._index.epoch

    def current(self) -> RuleIndex:
        return self._index

    def subscribe(self, listener: EpochListener) -> None:
        self._listeners.append(listener)

    def load(self, definitions: Iterable[StageDefinition]) -> None:
        """Replace every registered rule set in one swap."""
        self._definitions = list(definitions)
        self._rebuild()

    def add_stage(self, definition: StageDefinition) -> None:
        self._definitions = [d for d in self._definitions if d.id != definition.id] + [definition]
        self._rebuild()

    def clear(self) -> None:
        self._definitions = []
        self._rebuild()

    def _rebuild(self) -> None:
        builder = _IndexBuilder()
        for definition in self._definitions:
            builder.add(definition)
        index = builder.build(
            self._index.epoch + 1,
            self.catalog.snapshot(),
            (d.id for d in self._definitions),
        )
        self._index = index
        logger.debug("Rule index rebuilt", extra={"epoch": index.epoch, "stages": len(index.stages)})
        for listener in list(self._listeners):
            listener(index)

    # Uncached convenience queries; hot paths go through ResolutionCache.

    def resolve(self, kind: ResourceKind, ref: ResourceRef) -> Optional[StageId]:
        return self._index.resolve(kind, ref)

    def resolve_all(self, kind: ResourceKind) -> Dict[str, StageId]:
        return self._index.resolve_all(kind)

    def resolve_interaction(self, interaction_type: str, held: Optional[str] = None,
                            target: Optional[str] = None) -> Optional[StageId]:
        return self._index.resolve_interaction(interaction_type, held, target)
