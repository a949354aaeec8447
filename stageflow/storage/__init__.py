"""
Storage Module - Reference implementation of the card and stage collaborator.

The engine never talks to a database directly. It is handed an
AccountScope that can:
- Look up a card for update and save stage + position atomically
- List a board's stages, active or all, in display order
- Re-stage every card of a stage in bulk

Records live in memory; BoardSnapshotStore optionally mirrors them to disk.
"""

from .errors import RecordInvalid, RecordNotFound
from .repository import AccountScope, BoardRepository, CardHandle
from .snapshot import BoardSnapshotStore

__all__ = [
    "AccountScope",
    "BoardRepository",
    "CardHandle",
    "RecordInvalid",
    "RecordNotFound",
    "BoardSnapshotStore",
]
