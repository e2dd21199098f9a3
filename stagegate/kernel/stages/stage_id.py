"""
Namespaced identifiers for stages and resources.

Format: namespace:path (e.g. stagegate:iron_age, base:iron_ingot).
Identifiers are lowercased at construction so equality and hashing are
case-insensitive with respect to the raw input.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from pydantic_core import core_schema

DEFAULT_STAGE_NAMESPACE = "stagegate"
DEFAULT_RESOURCE_NAMESPACE = "base"

_NAMESPACE_RE = re.compile(r"^[a-z0-9_.\-]+$")
_PATH_RE = re.compile(r"^[a-z0-9_.\-/]+$")


class InvalidStageId(ValueError):
    """Raised when an identifier does not match namespace:path."""


def split_namespaced(raw: str, default_namespace: str) -> Tuple[str, str]:
    """
    Normalize and split a namespaced identifier.

    Raises InvalidStageId for empty or malformed input.
    """
    if not isinstance(raw, str):
        raise InvalidStageId(f"Identifier must be a string, got {type(raw).__name__}")
    value = raw.strip().lower()
    if not value:
        raise InvalidStageId("Identifier is empty")
    if ":" in value:
        namespace, _, path = value.partition(":")
    else:
        namespace, path = default_namespace, value
    if not _NAMESPACE_RE.match(namespace) or not _PATH_RE.match(path):
        raise InvalidStageId(f"Invalid identifier: {raw!r}")
    return namespace, path


def normalize_resource_id(raw: str) -> str:
    """Return the canonical namespace:path form of a resource id."""
    namespace, path = split_namespaced(raw, DEFAULT_RESOURCE_NAMESPACE)
    return f"{namespace}:{path}"


def try_normalize_resource_id(raw: Any) -> Optional[str]:
    """Like normalize_resource_id but returns None instead of raising."""
    try:
        return normalize_resource_id(raw)
    except InvalidStageId:
        return None


@dataclass(frozen=True, order=True)
class StageId:
    """Value type naming a stage."""

    namespace: str
    path: str

    def __post_init__(self) -> None:
        namespace, path = split_namespaced(f"{self.namespace}:{self.path}", DEFAULT_STAGE_NAMESPACE)
        object.__setattr__(self, "namespace", namespace)
        object.__setattr__(self, "path", path)

    @classmethod
    def parse(cls, raw: "str | StageId") -> "StageId":
        if isinstance(raw, StageId):
            return raw
        namespace, path = split_namespaced(raw, DEFAULT_STAGE_NAMESPACE)
        return cls(namespace, path)

    def __str__(self) -> str:
        return f"{self.namespace}:{self.path}"

    def __repr__(self) -> str:
        return f"StageId({str(self)!r})"

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.parse,
            serialization=core_schema.to_string_ser_schema(),
        )
