"""
oplog-sync: ordered, resumable MongoDB oplog replication.
"""

__version__ = "0.1.0"
