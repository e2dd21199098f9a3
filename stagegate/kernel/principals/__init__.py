"""
Per-principal stage state.
"""

from stagegate.kernel.principals.store import PrincipalStore

__all__ = ["PrincipalStore"]
