from __future__ import annotations


class StoreError(Exception):
    """Base class for storage faults that are not business outcomes."""


class StoreUnavailable(StoreError):
    """The backing store could not be read or written."""


class DuplicateKey(StoreError):
    """Insert of a document whose id already exists."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(f"{collection}: duplicate id {doc_id}")
        self.collection = collection
        self.doc_id = doc_id
