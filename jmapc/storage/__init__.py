"""jmapc storage.

Local SQLite correlation store, chronicle log and lease lock.
"""

from .chronicle import ChronicleLog, decode_token, encode_token
from .lease import LeaseKeeper, LeaseLock, LeaseStatus
from .schema import SCHEMA_VERSION, validate_table_name
from .sqlite import SQLiteStorage

__all__ = [
    "SQLiteStorage",
    "ChronicleLog",
    "LeaseLock",
    "LeaseKeeper",
    "LeaseStatus",
    "encode_token",
    "decode_token",
    "SCHEMA_VERSION",
    "validate_table_name",
]
