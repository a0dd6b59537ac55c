"""
Pytest configuration and fixtures for the bidding engine test suite.

Couchbase is replaced by an in-memory store that honours CAS on replace,
key uniqueness on insert and the simple predicates of ``Keyspace.find``.
Every call yields to the event loop so that concurrent bids interleave the
way they would against a real cluster.
"""

import asyncio
import copy
import operator
import os
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Dict, Optional

# The Couchbase client validates its settings at import time
os.environ.setdefault("COUCHBASE_USERNAME", "test")
os.environ.setdefault("COUCHBASE_PASSWORD", "test")
os.environ.setdefault("COUCHBASE_HOST", "localhost")
os.environ.setdefault("COUCHBASE_BUCKET", "auctions-test")
os.environ.setdefault("COUCHBASE_PROTOCOL", "couchbase")

import pytest
from couchbase.exceptions import (
    AmbiguousTimeoutException,
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
    TemporaryFailException,
    UnAmbiguousTimeoutException,
)

from clients.couchbase import Keyspace


# ============================================================================
# In-memory Couchbase
# ============================================================================

_OPS = {
    "=": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


class FakeResult:
    def __init__(self, cas: int, doc: Optional[dict] = None):
        self.cas = cas
        if doc is not None:
            self.content_as = {dict: copy.deepcopy(doc)}


class FakeCollection:
    def __init__(self, store: "FakeStore", name: str):
        self.store = store
        self.name = name

    @property
    def docs(self) -> Dict[str, tuple]:
        return self.store.collections.setdefault(self.name, {})

    async def get(self, key, *args, **kwargs):
        await asyncio.sleep(0)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        doc, cas = self.docs[key]
        return FakeResult(cas, doc)

    async def insert(self, key, value, *args, **kwargs):
        await asyncio.sleep(0)
        if key in self.docs:
            raise DocumentExistsException(message=f"{self.name}/{key} exists")
        return self._write(key, value)

    async def upsert(self, key, value, *args, **kwargs):
        await asyncio.sleep(0)
        return self._write(key, value)

    async def replace(self, key, value, options=None, **kwargs):
        await asyncio.sleep(0)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        cas = kwargs.get("cas")
        if options is not None:
            cas = options.get("cas", cas)
        if self.store.take(self.store.forced_cas_mismatches, self.name) or (cas and cas != self.docs[key][1]):
            self.store.cas_conflicts += 1
            raise CASMismatchException(message=f"{self.name}/{key} CAS mismatch")
        result = self._write(key, value)
        if self.store.take(self.store.lost_replies, self.name):
            # The write landed but the client never heard back
            raise AmbiguousTimeoutException(message=f"{self.name}/{key} reply lost")
        return result

    async def remove(self, key, *args, **kwargs):
        await asyncio.sleep(0)
        if key not in self.docs:
            raise DocumentNotFoundException(message=f"{self.name}/{key} not found")
        _, cas = self.docs.pop(key)
        return FakeResult(cas)

    def _write(self, key, value) -> FakeResult:
        cas = next(self.store.cas_counter)
        self.docs[key] = (copy.deepcopy(value), cas)
        return FakeResult(cas)


class FakeStore:
    def __init__(self):
        self.collections: Dict[str, Dict[str, tuple]] = {}
        self.cas_counter = count(1)
        self.cas_conflicts = 0
        self.failing_collections = set()
        # Per collection: how many upcoming calls fail with a retryable timeout
        self.transient_failures: Dict[str, int] = {}
        # Per collection: how many upcoming replaces raise a CAS mismatch
        self.forced_cas_mismatches: Dict[str, int] = {}
        # Per collection: how many upcoming replaces commit but time out
        self.lost_replies: Dict[str, int] = {}

    @staticmethod
    def take(counters: Dict[str, int], name: str) -> bool:
        if counters.get(name, 0) > 0:
            counters[name] -= 1
            return True
        return False

    def collection(self, name: str) -> FakeCollection:
        if name in self.failing_collections:
            raise TemporaryFailException(message=f"collection {name} unavailable")
        if self.take(self.transient_failures, name):
            raise UnAmbiguousTimeoutException(message=f"collection {name} timed out")
        return FakeCollection(self, name)

    def docs(self, name: str) -> Dict[str, dict]:
        return {key: doc for key, (doc, _) in self.collections.get(name, {}).items()}

    @staticmethod
    def _matches(doc: dict, where: Dict[str, Any]) -> bool:
        for field, cond in where.items():
            value = doc.get(field)
            if isinstance(cond, tuple):
                op, expected = cond
                if value is None:
                    return False
                if isinstance(expected, datetime):
                    value = _parse_datetime(value)
                if not _OPS[op](value, expected):
                    return False
            elif isinstance(cond, list):
                if value not in cond:
                    return False
            elif cond is None:
                if value is not None:
                    return False
            elif value != cond:
                return False
        return True

    def find(self, name: str, where=None, order_by=None, limit=None) -> list:
        if name in self.failing_collections:
            raise TemporaryFailException(message=f"collection {name} unavailable")
        rows = [
            {"id": key, name: copy.deepcopy(doc)}
            for key, (doc, _) in self.collections.get(name, {}).items()
            if self._matches(doc, where or {})
        ]
        if order_by:
            terms = [t.strip().split() for t in order_by.split(",")]
            for term in reversed(terms):
                field = term[0]
                descending = len(term) > 1 and term[1].upper() == "DESC"
                rows.sort(
                    key=lambda row: (row[name].get(field) is not None, row[name].get(field) or 0),
                    reverse=descending,
                )
        if limit is not None:
            rows = rows[:limit]
        return rows


@pytest.fixture(autouse=True)
def couchbase_store(monkeypatch):
    """Route every Keyspace call to a fresh in-memory store."""
    store = FakeStore()

    async def get_collection(self):
        return store.collection(self.collection_name)

    async def find(self, where=None, order_by=None, limit=None):
        await asyncio.sleep(0)
        return store.find(self.collection_name, where, order_by, limit)

    async def query(self, *args, **kwargs):
        raise AssertionError("raw N1QL queries are not supported by the in-memory store")

    monkeypatch.setattr(Keyspace, "get_collection", get_collection)
    monkeypatch.setattr(Keyspace, "find", find)
    monkeypatch.setattr(Keyspace, "query", query)
    return store


# ============================================================================
# Clock
# ============================================================================

class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def frozen_clock(monkeypatch):
    clock = FrozenClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc))
    monkeypatch.setattr("models.operations.clock.utcnow", clock)
    return clock


# ============================================================================
# Domain helpers
# ============================================================================

async def register_bidder(email: str, fica_approved: bool = True, **flags):
    from models.entities.couchbase.users import User

    from models.operations.users import user_register

    user = await user_register(email, name=email.split("@")[0], fica_approved=fica_approved)
    if flags:
        for key, value in flags.items():
            setattr(user.data, key, value)
        user = await User.update(user)
    return user


async def create_auction_with_lots(n_lots: int = 1, starting_bid: float = 10.0, bid_increment: float = 10.0, **lot_kwargs):
    from models.operations.auctions import auction_create, auction_create_lot

    auction = await auction_create("Spring Estate Sale")
    lots = []
    for i in range(n_lots):
        lot = await auction_create_lot(
            auction.id,
            title=f"Item {i + 1}",
            starting_bid=starting_bid,
            bid_increment=bid_increment,
            **lot_kwargs,
        )
        lots.append(lot)
    return auction, lots
