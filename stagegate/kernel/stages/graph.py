"""
Stage dependency graph.

The graph is rebuilt copy-on-write: every mutation compiles a new
_GraphSnapshot and swaps it in with a single assignment, so readers
always see a consistent view.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

from stagegate.kernel.errors import (
    ConfigError,
    DependencyError,
    DuplicateStageId,
    UnknownStageError,
)
from stagegate.kernel.stages.definitions import StageDefinition
from stagegate.kernel.stages.stage_id import StageId
from stagegate.logging_config import get_logger

logger = get_logger(__name__)


class GrantPolicy(str, Enum):
    """How a grant treats missing dependencies."""
    CASCADING = "cascading"  # grant missing ancestors too
    STRICT = "strict"  # refuse unless a bypass token is consumed


class RevokePolicy(str, Enum):
    """Whether revoking a stage also revokes stages that depend on it."""
    NO_CASCADE = "no_cascade"
    CASCADE_DEPENDENTS = "cascade_dependents"


@dataclass(frozen=True)
class _GraphSnapshot:
    definitions: Dict[StageId, StageDefinition]
    dependents: Dict[StageId, Tuple[StageId, ...]]
    errors: Tuple[DependencyError, ...]
    invalid: FrozenSet[StageId]


def _compile(definitions: Dict[StageId, StageDefinition]) -> _GraphSnapshot:
    dependents: Dict[StageId, List[StageId]] = {}
    errors: List[DependencyError] = []
    broken = set()

    for stage_id, definition in definitions.items():
        for dep in definition.dependencies:
            if dep not in definitions:
                broken.add(stage_id)
                errors.append(DependencyError(
                    stage_id,
                    DependencyError.MISSING,
                    f"Stage {stage_id} depends on undefined stage {dep}",
                    path=(stage_id, dep),
                ))
                continue
            dependents.setdefault(dep, []).append(stage_id)

    # Depth-first search with an explicit recursion stack
    visited = set()
    for root in definitions:
        if root in visited:
            continue
        stack_set = set()
        stack_path: List[StageId] = []

        def visit(node: StageId) -> None:
            visited.add(node)
            stack_set.add(node)
            stack_path.append(node)
            for dep in definitions[node].dependencies:
                if dep not in definitions:
                    continue
                if dep in stack_set:
                    cycle = stack_path[stack_path.index(dep):] + [dep]
                    broken.update(cycle)
                    errors.append(DependencyError(
                        dep,
                        DependencyError.CYCLE,
                        "Dependency cycle: " + " -> ".join(str(s) for s in cycle),
                        path=cycle,
                    ))
                elif dep not in visited:
                    visit(dep)
            stack_path.pop()
            stack_set.discard(node)

        visit(root)

    # Anything depending on a broken stage is broken too
    invalid = set(broken)
    frontier = list(broken)
    while frontier:
        node = frontier.pop()
        for child in dependents.get(node, ()):
            if child not in invalid:
                invalid.add(child)
                frontier.append(child)

    return _GraphSnapshot(
        definitions=definitions,
        dependents={k: tuple(v) for k, v in dependents.items()},
        errors=tuple(errors),
        invalid=frozenset(invalid),
    )


class StageGraph:
    """
    Dependency DAG over stage ids.

    Structural errors do not prevent a stage from being registered; they
    are reported by validate() and grants against affected stages fail
    closed via ensure_grantable().
    """

    def __init__(self, definitions: Iterable[StageDefinition] = ()):
        staged: Dict[StageId, StageDefinition] = {}
        for definition in definitions:
            if definition.id in staged:
                raise DuplicateStageId(definition.id)
            staged[definition.id] = definition
        self._snapshot = _compile(staged)

    # Mutation

    def register(self, definition: StageDefinition) -> None:
        current = self._snapshot.definitions
        if definition.id in current:
            raise DuplicateStageId(definition.id)
        updated = dict(current)
        updated[definition.id] = definition
        self._snapshot = _compile(updated)

    def replace_all(self, definitions: Iterable[StageDefinition]) -> List[ConfigError]:
        """Swap in a whole new set of definitions, skipping duplicates."""
        staged: Dict[StageId, StageDefinition] = {}
        problems: List[ConfigError] = []
        for definition in definitions:
            if definition.id in staged:
                problems.append(ConfigError(str(DuplicateStageId(definition.id)), source=str(definition.id)))
                logger.warning("Skipping duplicate stage definition", extra={"stage": str(definition.id)})
                continue
            staged[definition.id] = definition
        self._snapshot = _compile(staged)
        return problems

    # Queries

    def get(self, stage_id: StageId) -> Optional[StageDefinition]:
        return self._snapshot.definitions.get(stage_id)

    def require(self, stage_id: StageId) -> StageDefinition:
        definition = self._snapshot.definitions.get(stage_id)
        if definition is None:
            raise UnknownStageError(stage_id)
        return definition

    def definitions(self) -> List[StageDefinition]:
        return list(self._snapshot.definitions.values())

    def __contains__(self, stage_id: object) -> bool:
        return stage_id in self._snapshot.definitions

    def __iter__(self) -> Iterator[StageId]:
        return iter(list(self._snapshot.definitions))

    def __len__(self) -> int:
        return len(self._snapshot.definitions)

    def validate(self) -> List[DependencyError]:
        return list(self._snapshot.errors)

    def invalid_stages(self) -> FrozenSet[StageId]:
        return self._snapshot.invalid

    def ensure_grantable(self, stage_id: StageId) -> StageDefinition:
        """Return the definition or raise if the stage must not be granted."""
        snapshot = self._snapshot
        definition = snapshot.definitions.get(stage_id)
        if definition is None:
            raise UnknownStageError(stage_id)
        if stage_id in snapshot.invalid:
            for error in snapshot.errors:
                if stage_id in error.path or error.stage_id == stage_id:
                    raise DependencyError(stage_id, error.kind, str(error), path=error.path)
            raise DependencyError(
                stage_id,
                DependencyError.MISSING,
                f"Stage {stage_id} depends on a stage with structural errors",
            )
        return definition

    def ancestors(self, stage_id: StageId) -> List[StageId]:
        """Transitive dependencies of stage_id, dependencies first."""
        definitions = self._snapshot.definitions
        ordered: List[StageId] = []
        seen = {stage_id}

        def walk(node: StageId) -> None:
            definition = definitions.get(node)
            if definition is None:
                return
            for dep in definition.dependencies:
                if dep in seen:
                    continue
                seen.add(dep)
                walk(dep)
                ordered.append(dep)

        walk(stage_id)
        return ordered

    def descendants(self, stage_id: StageId) -> List[StageId]:
        """Stages that transitively depend on stage_id, nearest first."""
        dependents = self._snapshot.dependents
        ordered: List[StageId] = []
        seen = {stage_id}
        queue = list(dependents.get(stage_id, ()))
        while queue:
            node = queue.pop(0)
            if node in seen:
                continue
            seen.add(node)
            ordered.append(node)
            queue.extend(dependents.get(node, ()))
        return ordered

    def missing_dependencies(self, held: Iterable[StageId], stage_id: StageId) -> List[StageId]:
        held_set = held if isinstance(held, (set, frozenset)) else set(held)
        return [s for s in self.ancestors(stage_id) if s not in held_set]


@dataclass
class BypassTokens:
    """
    Single-use, time-boxed permission to grant a stage without its dependencies.

    Tokens are keyed by (principal, stage); issuing again refreshes the window.
    """

    window_seconds: float = 10.0
    clock: Callable[[], float] = time.monotonic
    _tokens: Dict[Tuple[uuid.UUID, StageId], float] = field(default_factory=dict)

    def issue(self, principal_id: uuid.UUID, stage_id: StageId) -> float:
        self._purge()
        expires_at = self.clock() + self.window_seconds
        self._tokens[(principal_id, stage_id)] = expires_at
        return expires_at

    def is_pending(self, principal_id: uuid.UUID, stage_id: StageId) -> bool:
        expires_at = self._tokens.get((principal_id, stage_id))
        return expires_at is not None and self.clock() < expires_at

    def consume(self, principal_id: uuid.UUID, stage_id: StageId) -> bool:
        expires_at = self._tokens.pop((principal_id, stage_id), None)
        return expires_at is not None and self.clock() < expires_at

    def _purge(self) -> None:
        now = self.clock()
        for key in [k for k, exp in self._tokens.items() if exp <= now]:
            del self._tokens[key]
