"""
Resource catalog, rule registry and resolution cache.
"""

from stagegate.kernel.rules.cache import CacheStats, ResolutionCache
from stagegate.kernel.rules.catalog import Resource, ResourceCatalog
from stagegate.kernel.rules.registry import RuleIndex, RuleRegistry

__all__ = [
    "CacheStats",
    "Resource",
    "ResourceCatalog",
    "ResolutionCache",
    "RuleIndex",
    "RuleRegistry",
]
