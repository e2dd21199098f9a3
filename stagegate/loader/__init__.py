"""
Declarative definition loading.
"""

from stagegate.loader.stage_loader import (
    LoadResult,
    StageLoader,
    load_catalog,
    load_triggers,
    parse_catalog,
    parse_stage_document,
    parse_triggers,
)

__all__ = [
    "LoadResult",
    "StageLoader",
    "load_catalog",
    "load_triggers",
    "parse_catalog",
    "parse_stage_document",
    "parse_triggers",
]
