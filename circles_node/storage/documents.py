from __future__ import annotations

"""
In-process document collection with atomic single-document operations.

This is the persistence primitive both stores sit on. It gives the
guarantees the core relies on and nothing more:

- every call is atomic with respect to every other call on the same
  collection (one lock per collection)
- conditional update: apply a mutation only if a filter still matches
  the current document (compare-and-swap)
- upsert with set-on-insert fields
- documents are copied on the way in and out, so callers never share
  mutable state with the collection

Optionally mirrors itself to a SnapshotFile on each write. The file is
written before the in-memory state changes, so a failed save leaves the
collection as it was.
"""

import copy
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import DuplicateKey
from .snapshot import SnapshotFile

log = logging.getLogger(__name__)

Doc = Dict[str, Any]
Filter = Callable[[Doc], bool]


class DocumentCollection:
    def __init__(self, name: str, snapshot: Optional[SnapshotFile] = None) -> None:
        self.name = name
        self._lock = threading.RLock()
        self._docs: Dict[str, Doc] = {}
        self._snapshot = snapshot
        if snapshot is not None:
            state = snapshot.load() or {}
            docs = state.get("docs", {})
            if isinstance(docs, dict):
                self._docs = {str(k): v for k, v in docs.items() if isinstance(v, dict)}
            log.info("[%s] loaded %d documents", name, len(self._docs))

    def _commit(self, doc_id: str, new: Optional[Doc]) -> None:
        """Persist the candidate state first; memory changes only once that succeeds."""
        if self._snapshot is not None:
            docs = dict(self._docs)
            if new is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = new
            self._snapshot.save({"collection": self.name, "docs": docs})
        if new is None:
            self._docs.pop(doc_id, None)
        else:
            self._docs[doc_id] = new

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)

    # -----------------------------------------------------
    # Reads
    # -----------------------------------------------------
    def get(self, doc_id: str) -> Optional[Doc]:
        with self._lock:
            doc = self._docs.get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, where: Optional[Filter] = None) -> List[Doc]:
        with self._lock:
            return [copy.deepcopy(d) for d in self._docs.values() if where is None or where(d)]

    # -----------------------------------------------------
    # Writes
    # -----------------------------------------------------
    def insert(self, doc_id: str, doc: Doc) -> Doc:
        with self._lock:
            if doc_id in self._docs:
                raise DuplicateKey(self.name, doc_id)
            new = copy.deepcopy(doc)
            self._commit(doc_id, new)
            return copy.deepcopy(new)

    def update_if(
        self,
        doc_id: str,
        where: Optional[Filter],
        changes: Dict[str, Any],
        *,
        unset: Iterable[str] = (),
    ) -> Optional[Doc]:
        """
        Set `changes` and remove `unset` keys on doc_id iff it exists and
        `where` (when given) matches its current state. Returns the new
        document, or None when nothing was modified.
        """
        with self._lock:
            cur = self._docs.get(doc_id)
            if cur is None:
                return None
            if where is not None and not where(cur):
                return None
            new = copy.deepcopy(cur)
            new.update(copy.deepcopy(changes))
            for k in unset:
                new.pop(k, None)
            self._commit(doc_id, new)
            return copy.deepcopy(new)

    def modify_if(self, doc_id: str, where: Optional[Filter], mutate: Callable[[Doc], None]) -> Optional[Doc]:
        """Like update_if, but `mutate` edits a private copy in place (for map fields)."""
        with self._lock:
            cur = self._docs.get(doc_id)
            if cur is None:
                return None
            if where is not None and not where(cur):
                return None
            new = copy.deepcopy(cur)
            mutate(new)
            self._commit(doc_id, new)
            return copy.deepcopy(new)

    def upsert(self, doc_id: str, set_fields: Dict[str, Any], set_on_insert: Dict[str, Any], *, unset: Iterable[str] = ()) -> Doc:
        with self._lock:
            cur = self._docs.get(doc_id)
            if cur is None:
                new = copy.deepcopy(set_on_insert)
            else:
                new = copy.deepcopy(cur)
            new.update(copy.deepcopy(set_fields))
            for k in unset:
                new.pop(k, None)
            self._commit(doc_id, new)
            return copy.deepcopy(new)

    def delete(self, doc_id: str) -> Optional[Doc]:
        with self._lock:
            doc = self._docs.get(doc_id)
            if doc is not None:
                self._commit(doc_id, None)
            return doc
