"""
Replication of authoritative stage state to remote observers.
"""

from stagegate.engines.replication.messages import (
    BypassFlag,
    DefinitionPayload,
    DeltaOp,
    LockTableSnapshot,
    ReplicationMessage,
    StageDefinitionsSnapshot,
    StageDelta,
    StageDeltaBatch,
    StageSetSnapshot,
    decode_message,
    encode_message,
)
from stagegate.engines.replication.observer import Observer, ObserverCache
from stagegate.engines.replication.protocol import ReplicationProtocol

__all__ = [
    "BypassFlag",
    "DefinitionPayload",
    "DeltaOp",
    "LockTableSnapshot",
    "Observer",
    "ObserverCache",
    "ReplicationMessage",
    "ReplicationProtocol",
    "StageDefinitionsSnapshot",
    "StageDelta",
    "StageDeltaBatch",
    "StageSetSnapshot",
    "decode_message",
    "encode_message",
]
