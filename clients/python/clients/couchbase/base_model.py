import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TypeVar, Generic, List, ClassVar
from pydantic import BaseModel
from couchbase.exceptions import DocumentNotFoundException
from couchbase.options import ReplaceOptions
from .keyspace import Keyspace, get_keyspace


class BaseCouchbaseEntityData(BaseModel):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_user_id: Optional[str] = None


DataT = TypeVar("DataT", bound=BaseCouchbaseEntityData)
T = TypeVar("T", bound="BaseModelCouchbase")


class BaseModelCouchbase(BaseModel, Generic[DataT]):
    id: str
    data: DataT
    cas: Optional[int] = None

    _collection_name: ClassVar[str] = ""

    @classmethod
    def get_keyspace(cls) -> Keyspace:
        if not cls._collection_name:
            raise ValueError(f"_collection_name not set for {cls.__name__}")
        return get_keyspace(cls._collection_name)

    @staticmethod
    def _stamp(data: BaseCouchbaseEntityData, user_id: Optional[str] = None) -> dict:
        now = datetime.now(timezone.utc)
        if data.created_at is None:
            data.created_at = now
        data.updated_at = now
        if user_id:
            data.created_by_user_id = user_id
        return data.model_dump(mode="json")

    @classmethod
    async def get(cls: type[T], id: str) -> Optional[T]:
        try:
            collection = await cls.get_keyspace().get_collection()
            result = await collection.get(id)
            data = result.content_as[dict]
            return cls(id=id, data=data, cas=result.cas)
        except DocumentNotFoundException:
            return None

    @classmethod
    async def create(cls: type[T], data: DataT, key: Optional[str] = None, user_id: Optional[str] = None) -> T:
        """Insert a new document. A taken key raises DocumentExistsException."""
        if key is None:
            key = str(uuid.uuid4())
        doc = cls._stamp(data, user_id)
        result = await cls.get_keyspace().insert(doc, key=key)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def create_or_update(cls: type[T], key: str, data: DataT, user_id: Optional[str] = None) -> T:
        """Idempotently create or replace a document under a deterministic key.

        Last write wins; no CAS check is made.
        """
        doc = cls._stamp(data, user_id)
        result = await cls.get_keyspace().upsert(key, doc)
        return cls(id=key, data=data, cas=result.cas)

    @classmethod
    async def update(cls: type[T], item: T) -> T:
        """Replace the document, guarded by the CAS value it was read with.

        Raises CASMismatchException when another writer got there first.
        """
        collection = await cls.get_keyspace().get_collection()
        item.data.updated_at = datetime.now(timezone.utc)
        doc = item.data.model_dump(mode="json")
        if item.cas:
            result = await collection.replace(item.id, doc, ReplaceOptions(cas=item.cas))
        else:
            result = await collection.replace(item.id, doc)
        item.cas = result.cas
        return item

    @classmethod
    async def delete(cls: type[T], id: str) -> bool:
        try:
            await cls.get_keyspace().remove(id)
            return True
        except DocumentNotFoundException:
            return False

    @classmethod
    async def find(
        cls: type[T],
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        rows = await cls.get_keyspace().find(where, order_by=order_by, limit=limit)
        return [
            cls(id=row["id"], data=row[cls._collection_name])
            for row in rows if row.get(cls._collection_name)
        ]

    @classmethod
    async def list(cls: type[T], limit: Optional[int] = None) -> List[T]:
        return await cls.find(order_by="created_at DESC", limit=limit)
