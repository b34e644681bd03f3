"""
Entity repositories.

Every component stores its records through a Repository with a small
get / put / delete / scan contract. InMemoryRepository backs tests and
local runs; MongoRepository maps one collection per entity.
"""
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Iterator, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel
from pymongo.database import Database

from schemas import Customer, OtpRecord, Payment, RevokedToken, Transaction, Transfer, User, Vendor

T = TypeVar("T", bound=BaseModel)
Predicate = Callable[[T], bool]


class Repository(Generic[T]):
    def __init__(self, model: Type[T], key_field: str = "id"):
        self.model = model
        self.key_field = key_field

    def key_of(self, record: T) -> str:
        return getattr(record, self.key_field)

    def get(self, key: str) -> Optional[T]:
        raise NotImplementedError

    def put(self, record: T) -> T:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def scan(self, predicate: Optional[Predicate] = None) -> List[T]:
        raise NotImplementedError

    def find_one(self, predicate: Predicate) -> Optional[T]:
        for record in self.scan(predicate):
            return record
        return None


class InMemoryRepository(Repository[T]):
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self, model: Type[T], key_field: str = "id"):
        super().__init__(model, key_field)
        self._items: Dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            record = self._items.get(key)
        return record.model_copy(deep=True) if record is not None else None

    def put(self, record: T) -> T:
        with self._lock:
            self._items[self.key_of(record)] = record.model_copy(deep=True)
        return record

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def scan(self, predicate: Optional[Predicate] = None) -> List[T]:
        with self._lock:
            records = list(self._items.values())
        return [r.model_copy(deep=True) for r in records if predicate is None or predicate(r)]


class MongoRepository(Repository[T]):
    """One Mongo collection per entity, documents keyed by `_id`.

    `unique_fields` get a unique index; a put that collides raises
    pymongo's DuplicateKeyError.
    """

    def __init__(self, db: Database, model: Type[T], key_field: str = "id", unique_fields: Sequence[str] = ()):
        super().__init__(model, key_field)
        self.collection = db[model.__name__.lower()]
        for field in unique_fields:
            self.collection.create_index(field, unique=True)

    def _to_doc(self, record: T) -> dict:
        doc = record.model_dump(mode="json")
        doc["_id"] = self.key_of(record)
        return doc

    def _from_doc(self, doc: dict) -> T:
        doc = dict(doc)
        doc.pop("_id", None)
        return self.model.model_validate(doc)

    def get(self, key: str) -> Optional[T]:
        doc = self.collection.find_one({"_id": key})
        return self._from_doc(doc) if doc else None

    def put(self, record: T) -> T:
        self.collection.replace_one({"_id": self.key_of(record)}, self._to_doc(record), upsert=True)
        return record

    def delete(self, key: str) -> None:
        self.collection.delete_one({"_id": key})

    def scan(self, predicate: Optional[Predicate] = None) -> List[T]:
        records = (self._from_doc(doc) for doc in self.collection.find({}))
        return [r for r in records if predicate is None or predicate(r)]


@dataclass
class Repositories:
    vendors: Repository[Vendor]
    users: Repository[User]
    customers: Repository[Customer]
    payments: Repository[Payment]
    transfers: Repository[Transfer]
    transactions: Repository[Transaction]
    otps: Repository[OtpRecord]
    revoked_tokens: Repository[RevokedToken]

    @classmethod
    def in_memory(cls) -> "Repositories":
        return cls(
            vendors=InMemoryRepository(Vendor),
            users=InMemoryRepository(User),
            customers=InMemoryRepository(Customer),
            payments=InMemoryRepository(Payment),
            transfers=InMemoryRepository(Transfer),
            transactions=InMemoryRepository(Transaction),
            otps=InMemoryRepository(OtpRecord, key_field="phone"),
            revoked_tokens=InMemoryRepository(RevokedToken, key_field="jti"),
        )

    @classmethod
    def mongo(cls, db: Database) -> "Repositories":
        return cls(
            vendors=MongoRepository(db, Vendor, unique_fields=("email",)),
            users=MongoRepository(db, User),
            customers=MongoRepository(db, Customer),
            payments=MongoRepository(db, Payment),
            transfers=MongoRepository(db, Transfer),
            transactions=MongoRepository(db, Transaction),
            otps=MongoRepository(db, OtpRecord, key_field="phone"),
            revoked_tokens=MongoRepository(db, RevokedToken, key_field="jti"),
        )


class KeyedLock:
    """One lock per record key, for read-check-write sequences on a single record.

    Entries are reference-counted and dropped once no caller holds or waits
    on them, so the map only ever holds keys that are in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def __call__(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
