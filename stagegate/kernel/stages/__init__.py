"""
Stage identity, definitions and the dependency graph.
"""

from stagegate.kernel.stages.definitions import (
    InteractionRule,
    KindRules,
    ResourceKind,
    RuleSet,
    StageDefinition,
)
from stagegate.kernel.stages.graph import BypassTokens, GrantPolicy, RevokePolicy, StageGraph
from stagegate.kernel.stages.stage_id import (
    InvalidStageId,
    StageId,
    normalize_resource_id,
    try_normalize_resource_id,
)

__all__ = [
    "BypassTokens",
    "GrantPolicy",
    "InteractionRule",
    "InvalidStageId",
    "KindRules",
    "ResourceKind",
    "RevokePolicy",
    "RuleSet",
    "StageDefinition",
    "StageGraph",
    "StageId",
    "normalize_resource_id",
    "try_normalize_resource_id",
]
