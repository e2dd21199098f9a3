"""
Stage definitions and the rule sets embedded in them.

Definitions are created at load time and are immutable until the next
reload replaces them wholesale.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stagegate.kernel.stages.stage_id import StageId


class ResourceKind(str, Enum):
    """Kinds of catalog resources a rule can gate."""
    ITEM = "item"
    BLOCK = "block"
    ENTITY = "entity"
    FLUID = "fluid"
    RECIPE = "recipe"
    REGION = "region"


def _strip_tag(value: str) -> str:
    return value[1:] if value.startswith("#") else value


class KindRules(BaseModel):
    """Locks and whitelist entries for a single resource kind."""

    model_config = ConfigDict(frozen=True)

    ids: FrozenSet[str] = frozenset()
    tags: Tuple[str, ...] = ()
    namespaces: FrozenSet[str] = frozenset()
    unlocked: FrozenSet[str] = frozenset()

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value):
        return tuple(_strip_tag(str(v)).lower() for v in value or ())

    @field_validator("namespaces", mode="before")
    @classmethod
    def _lower_namespaces(cls, value):
        return frozenset(str(v).strip().lower() for v in value or ())

    def is_empty(self) -> bool:
        return not (self.ids or self.tags or self.namespaces or self.unlocked)


class InteractionRule(BaseModel):
    """
    Lock on a contextual interaction.

    held and target accept an exact id, "*" for any, or "#fragment" which
    matches any id containing the fragment.
    """

    model_config = ConfigDict(frozen=True)

    interaction_type: str
    held: str = "*"
    target: str = "*"
    description: str = ""

    @property
    def key(self) -> str:
        return interaction_key(self.interaction_type, self.held, self.target)

    def matches(self, interaction_type: str, held: Optional[str], target: Optional[str]) -> bool:
        if self.interaction_type != interaction_type:
            return False
        return _pattern_matches(self.held, held) and _pattern_matches(self.target, target)


def interaction_key(interaction_type: str, held: Optional[str], target: Optional[str]) -> str:
    return f"{interaction_type}|{held or '*'}|{target or '*'}"


def _pattern_matches(pattern: str, value: Optional[str]) -> bool:
    if pattern in ("", "*"):
        return True
    if value is None:
        return False
    if pattern.startswith("#"):
        return pattern[1:] in value
    return pattern == value


class RuleSet(BaseModel):
    """All rules contributed by one stage."""

    model_config = ConfigDict(frozen=True)

    kinds: Dict[ResourceKind, KindRules] = Field(default_factory=dict)
    namespaces: FrozenSet[str] = frozenset()  # locks every kind in the namespace
    names: Tuple[str, ...] = ()  # case-insensitive substring patterns
    interactions: Tuple[InteractionRule, ...] = ()

    @field_validator("namespaces", mode="before")
    @classmethod
    def _lower_namespaces(cls, value):
        return frozenset(str(v).strip().lower() for v in value or ())

    @field_validator("names", mode="before")
    @classmethod
    def _lower_names(cls, value):
        return tuple(str(v).lower() for v in value or () if str(v))

    def for_kind(self, kind: ResourceKind) -> KindRules:
        return self.kinds.get(kind) or KindRules()


class StageDefinition(BaseModel):
    """A stage: identity, display metadata, dependencies and rules."""

    model_config = ConfigDict(frozen=True)

    id: StageId
    display_name: str = ""
    description: str = ""
    icon: Optional[str] = None
    unlock_message: Optional[str] = None
    dependencies: Tuple[StageId, ...] = ()
    rules: RuleSet = Field(default_factory=RuleSet)

    @property
    def title(self) -> str:
        return self.display_name or self.id.path

    def dependency_list(self) -> List[StageId]:
        return list(self.dependencies)
