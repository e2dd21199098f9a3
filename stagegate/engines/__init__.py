"""
Engines built on the kernel: group sync, replication and triggers.
"""
