"""
Stable Kernel Layer

Stage identity and graph, rule resolution, principal state, events and
durable storage. Engines build on these; the kernel never imports them.

Invariants:
- The dependency graph is acyclic; violations are reported and grants
  against affected stages fail closed
- Resolution is a pure function of (resource, active rule index)
- Whitelist entries always resolve as unrestricted
- Cached answers never outlive the rule index epoch they were computed for
"""

from stagegate.kernel.errors import (
    AdmissionDenied,
    ConfigError,
    DependencyError,
    DuplicateStageId,
    MissingDependenciesError,
    ReplicationError,
    StageGateError,
    TriggerError,
    UnknownStageError,
)
from stagegate.kernel.stages import (
    BypassTokens,
    GrantPolicy,
    InteractionRule,
    KindRules,
    ResourceKind,
    RevokePolicy,
    RuleSet,
    StageDefinition,
    StageGraph,
    StageId,
)

__all__ = [
    # Errors
    "AdmissionDenied",
    "ConfigError",
    "DependencyError",
    "DuplicateStageId",
    "MissingDependenciesError",
    "ReplicationError",
    "StageGateError",
    "TriggerError",
    "UnknownStageError",
    # Stages
    "BypassTokens",
    "GrantPolicy",
    "InteractionRule",
    "KindRules",
    "ResourceKind",
    "RevokePolicy",
    "RuleSet",
    "StageDefinition",
    "StageGraph",
    "StageId",
]
