"""
Exception hierarchy for the stage gate kernel.

Visibility queries never raise these; they fail open. Grant mutations
raise them and fail closed.
"""

from typing import Iterable, Optional, Sequence


class StageGateError(Exception):
    """Base class for all stage gate errors."""


class ConfigError(StageGateError):
    """A stage, rule or trigger definition could not be parsed."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class DependencyError(StageGateError):
    """
    Structural problem in the dependency graph.

    Reported by StageGraph.validate(); raised when granting a stage that
    is part of (or depends on) a broken subgraph.
    """

    MISSING = "missing_dependency"
    CYCLE = "cycle"

    def __init__(self, stage_id, kind: str, detail: str, path: Sequence = ()):
        self.stage_id = stage_id
        self.kind = kind
        self.path = tuple(path)
        super().__init__(detail)


class DuplicateStageId(StageGateError):
    """A stage with the same id is already registered."""

    def __init__(self, stage_id):
        self.stage_id = stage_id
        super().__init__(f"Duplicate stage id: {stage_id}")


class UnknownStageError(StageGateError):
    """Grant requested for a stage that is not defined."""

    def __init__(self, stage_id):
        self.stage_id = stage_id
        super().__init__(f"Unknown stage: {stage_id}")


class MissingDependenciesError(StageGateError):
    """Strict grant refused because the principal lacks dependencies."""

    def __init__(self, stage_id, missing: Iterable):
        self.stage_id = stage_id
        self.missing = list(missing)
        names = ", ".join(str(m) for m in self.missing)
        super().__init__(f"Cannot grant {stage_id}: missing dependencies [{names}]")


class ReplicationError(StageGateError):
    """Delivery of a replication message to an observer failed."""


class TriggerError(StageGateError):
    """An external trigger or quest host integration is unavailable."""


class AdmissionDenied(StageGateError):
    """A principal does not satisfy a group's admission rule."""

    def __init__(self, principal_id, group_id: str, rule: str):
        self.principal_id = principal_id
        self.group_id = group_id
        self.rule = rule
        super().__init__(f"Principal {principal_id} not admitted to group {group_id} ({rule})")
