"""
Durable storage collaborators.
"""

from stagegate.kernel.persistence.durable import Durable, InMemoryDurable, SqlDurable

__all__ = ["Durable", "InMemoryDurable", "SqlDurable"]
