"""
Group membership and shared stage sets.
"""

from stagegate.engines.groups.group_sync import (
    AdmissionRule,
    Alignment,
    Group,
    GroupPolicy,
    GroupSync,
    LeavePolicy,
)
from stagegate.engines.groups.membership import (
    GroupHost,
    InMemoryGroupHost,
    MembershipChange,
    MembershipFeed,
    PollingMembershipFeed,
    PushMembershipFeed,
)

__all__ = [
    "AdmissionRule",
    "Alignment",
    "Group",
    "GroupHost",
    "GroupPolicy",
    "GroupSync",
    "InMemoryGroupHost",
    "LeavePolicy",
    "MembershipChange",
    "MembershipFeed",
    "PollingMembershipFeed",
    "PushMembershipFeed",
]
