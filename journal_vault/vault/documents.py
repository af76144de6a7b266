"""
Document store seam used by the migration engine.

The engine only needs equality queries on the owner, an "unencrypted"
predicate, get/update by id and an atomic multi-document write.
``MemoryDocumentStore`` implements that contract in process memory.
"""
import copy
import uuid
import asyncio
from typing import Any, NamedTuple, Optional, Protocol
from collections.abc import Mapping

from ..conf import ENCRYPTED_FLAG


class Document(NamedTuple):
    id: str
    data: dict


def is_unencrypted(data: Mapping[str, Any]) -> bool:
    """True when the encrypted flag is absent or anything but ``True``.

    Written as an explicit "absent OR not true" predicate so documents that
    never carried the flag are included whatever the backend's inequality
    semantics.
    """
    return data.get(ENCRYPTED_FLAG) is not True


class DocumentStore(Protocol):
    """Operations the encryption engine needs from the document store."""

    async def query_unencrypted(self, collection: str, uid: str) -> list[Document]:
        ...

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        ...

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        ...

    async def commit_batch(
        self, collection: str, updates: Mapping[str, Mapping[str, Any]]
    ) -> None:
        """Apply every partial update or none of them."""
        ...


class MemoryDocumentStore:
    """In-memory document store with atomic batch commits."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, dict]:
        return self._collections.setdefault(name, {})

    def add(self, collection: str, data: Mapping[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        self._collection(collection)[doc_id] = copy.deepcopy(dict(data))
        return doc_id

    def documents(self, collection: str) -> list[Document]:
        return [
            Document(doc_id, copy.deepcopy(data))
            for doc_id, data in self._collection(collection).items()
        ]

    async def query_unencrypted(self, collection: str, uid: str) -> list[Document]:
        async with self._lock:
            return [
                Document(doc_id, copy.deepcopy(data))
                for doc_id, data in self._collection(collection).items()
                if data.get("uid") == uid and is_unencrypted(data)
            ]

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        data = self._collection(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def update(self, collection: str, doc_id: str, data: Mapping[str, Any]) -> None:
        """Merge data into an existing document.

        Raises:
            KeyError: If the document does not exist.
        """
        async with self._lock:
            docs = self._collection(collection)
            if doc_id not in docs:
                raise KeyError(f"Document not found in {collection}: {doc_id}")
            docs[doc_id].update(copy.deepcopy(dict(data)))

    async def commit_batch(
        self, collection: str, updates: Mapping[str, Mapping[str, Any]]
    ) -> None:
        """Merge every update, or raise KeyError leaving all documents untouched."""
        async with self._lock:
            docs = self._collection(collection)
            missing = [doc_id for doc_id in updates if doc_id not in docs]
            if missing:
                raise KeyError(
                    f"Documents not found in {collection}: {', '.join(missing)}"
                )
            for doc_id, data in updates.items():
                docs[doc_id].update(copy.deepcopy(dict(data)))
