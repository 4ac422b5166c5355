"""
Document stores for proposals and ranked lists.

Each store exclusively owns its collection; other components only go
through the store's methods.
"""

from .documents import DocumentCollection
from .errors import DuplicateKey, StoreError, StoreUnavailable
from .proposal_store import ProposalStore
from .ranked_list_store import RankedListStore
from .snapshot import SnapshotFile

__all__ = [
    "DocumentCollection",
    "DuplicateKey",
    "ProposalStore",
    "RankedListStore",
    "SnapshotFile",
    "StoreError",
    "StoreUnavailable",
]
