import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from couchbase.n1ql import QueryScanConsistency
from couchbase.options import QueryOptions
from couchbase.result import MutationResult
from pydantic import TypeAdapter

from .config import get_cluster, DEFAULT_BUCKET_NAME

# Comparison operators accepted by Keyspace.find as ("<op>", value) tuples.
_FIND_OPERATORS = ("=", "!=", "<", "<=", ">", ">=")

_datetime_adapter = TypeAdapter(datetime)


def _to_query_param(value: Any) -> Any:
    # Documents are stored with pydantic's JSON encoding, so parameters must match it
    # for string comparisons on timestamps to be meaningful.
    if isinstance(value, datetime):
        return _datetime_adapter.dump_python(value, mode="json")
    if isinstance(value, (list, tuple, set)):
        return [_to_query_param(v) for v in value]
    return value


@dataclass
class Keyspace:
    bucket_name: str
    scope_name: str
    collection_name: str

    @classmethod
    def from_string(cls, keyspace: str) -> 'Keyspace':
        parts = keyspace.split('.')
        if len(parts) != 3:
            raise ValueError(
                "Invalid keyspace format. Expected 'bucket_name.scope_name.collection_name', "
                f"got '{keyspace}'"
            )
        return cls(*parts)

    def __str__(self) -> str:
        return f"{self.bucket_name}.{self.scope_name}.{self.collection_name}"

    async def query(self, query: str, consistent: bool = False, **params) -> list:
        cluster = await get_cluster()
        query = query.replace("${keyspace}", str(self))
        options = QueryOptions(named_parameters=params)
        if consistent:
            options = QueryOptions(
                named_parameters=params,
                scan_consistency=QueryScanConsistency.REQUEST_PLUS,
            )
        result = cluster.query(query, options)
        return [row async for row in result]

    async def find(
        self,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Select whole documents matching simple field predicates.

        ``where`` maps a field name to either a value (equality), a list (``IN``)
        or an ``(operator, value)`` tuple. Rows come back as
        ``{"id": ..., "<collection_name>": {...}}`` like ``SELECT META().id, *``.
        Reads use REQUEST_PLUS so a caller sees its own preceding writes.
        """
        conditions = []
        params: Dict[str, Any] = {}
        for i, (field, value) in enumerate((where or {}).items()):
            name = f"p{i}"
            if isinstance(value, tuple):
                op, value = value
                if op not in _FIND_OPERATORS:
                    raise ValueError(f"Unsupported operator {op!r} for field {field}")
                conditions.append(f"`{field}` {op} ${name}")
            elif isinstance(value, list):
                conditions.append(f"`{field}` IN ${name}")
            elif value is None:
                conditions.append(f"`{field}` IS NULL")
                continue
            else:
                conditions.append(f"`{field}` = ${name}")
            params[name] = _to_query_param(value)

        where_clause = " AND ".join(conditions) if conditions else "1=1"
        query = f"SELECT META().id, * FROM {self} WHERE {where_clause}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        return await self.query(query, consistent=True, **params)

    async def get_scope(self):
        cluster = await get_cluster()
        bucket = cluster.bucket(self.bucket_name)
        return bucket.scope(self.scope_name)

    async def get_collection(self):
        scope = await self.get_scope()
        return scope.collection(self.collection_name)

    async def insert(self, value: dict, key: Optional[str] = None, **kwargs) -> MutationResult:
        """Insert a new document. Raises DocumentExistsException if the key is taken."""
        if key is None:
            key = str(uuid.uuid4())
        collection = await self.get_collection()
        return await collection.insert(key, value, **kwargs)

    async def upsert(self, key: str, value: dict, **kwargs) -> MutationResult:
        """Insert or update a document (idempotent write)."""
        collection = await self.get_collection()
        return await collection.upsert(key, value, **kwargs)

    async def remove(self, key: str, **kwargs) -> int:
        collection = await self.get_collection()
        result = await collection.remove(key, **kwargs)
        return result.cas


def get_keyspace(collection_name: str, scope_name: Optional[str] = "_default", bucket_name: Optional[str] = DEFAULT_BUCKET_NAME) -> Keyspace:
    """
    Create a Keyspace instance with optional scope and bucket parameters.

    Args:
        collection_name: Name of the collection
        scope_name: Name of the scope (defaults to "_default")
        bucket_name: Name of the bucket (defaults to DEFAULT_BUCKET_NAME)
    """
    return Keyspace(bucket_name, scope_name, collection_name)
