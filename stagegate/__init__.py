"""
Stage Gate - progression capability service.

Grants named stages to principals and resolves which stage, if any,
gates each resource in the catalog.
"""

__version__ = "1.0.0"
