"""
Replication message shapes.

All messages are pydantic models discriminated by `type`, serialized as
JSON for the WebSocket transport.
"""

import uuid
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from stagegate.kernel.stages.definitions import ResourceKind, StageDefinition
from stagegate.kernel.stages.stage_id import StageId


class DeltaOp(str, Enum):
    ADD = "add"
    REMOVE = "remove"


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


class DefinitionPayload(_Message):
    """Display-facing subset of a StageDefinition."""

    id: StageId
    display_name: str = ""
    description: str = ""
    icon: Optional[str] = None
    unlock_message: Optional[str] = None
    dependencies: List[StageId] = Field(default_factory=list)

    @classmethod
    def from_definition(cls, definition: StageDefinition) -> "DefinitionPayload":
        return cls(
            id=definition.id,
            display_name=definition.title,
            description=definition.description,
            icon=definition.icon,
            unlock_message=definition.unlock_message,
            dependencies=list(definition.dependencies),
        )


class StageDefinitionsSnapshot(_Message):
    type: Literal["definitions"] = "definitions"
    definitions: List[DefinitionPayload]


class StageSetSnapshot(_Message):
    type: Literal["stage_set"] = "stage_set"
    principal_id: uuid.UUID
    stages: List[StageId]


class StageDelta(_Message):
    type: Literal["delta"] = "delta"
    principal_id: uuid.UUID
    op: DeltaOp
    stage: StageId


class StageDeltaBatch(_Message):
    type: Literal["delta_batch"] = "delta_batch"
    principal_id: uuid.UUID
    deltas: List[StageDelta]


class LockTableSnapshot(_Message):
    type: Literal["lock_table"] = "lock_table"
    resource_kind: ResourceKind
    entries: Dict[str, StageId]


class BypassFlag(_Message):
    type: Literal["bypass"] = "bypass"
    principal_id: uuid.UUID
    active: bool


ReplicationMessage = Annotated[
    Union[
        StageDefinitionsSnapshot,
        StageSetSnapshot,
        StageDelta,
        StageDeltaBatch,
        LockTableSnapshot,
        BypassFlag,
    ],
    Field(discriminator="type"),
]

_adapter: TypeAdapter = TypeAdapter(ReplicationMessage)


def encode_message(message: BaseModel) -> str:
    return message.model_dump_json()


def decode_message(raw: Union[str, bytes]) -> BaseModel:
    return _adapter.validate_json(raw)
