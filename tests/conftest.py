"""
Shared fixtures.

The API talks to MongoDB only through a small set of pymongo collection
methods; ``FakeDatabase`` implements those in memory so tests run without a
server. It is injected through ``app.dependency_overrides[get_db]``.
"""

import copy
import os
import re
import sys
from types import SimpleNamespace

import pytest

os.environ["BCRYPT_ROUNDS"] = "4"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DATABASE_NAME", None)

# Ensure project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from bson import ObjectId
from fastapi.testclient import TestClient

import main
from auth import create_token, hash_password
from database import create_document, get_db
from order_workflow import PendingCancellations
from schemas import Product, User


# ---------------------------------------------------------------------------
# In-memory collections
# ---------------------------------------------------------------------------


def _resolve(doc, path):
    current = [doc]
    for part in path.split("."):
        found = []
        for item in current:
            if isinstance(item, list):
                found.extend(x[part] for x in item if isinstance(x, dict) and part in x)
            elif isinstance(item, dict) and part in item:
                found.append(item[part])
        current = found
    return current


def _check(values, op, arg, cond):
    if op == "$in":
        return any(v in arg for v in values)
    if op == "$ne":
        return arg not in values
    if op == "$regex":
        flags = re.IGNORECASE if "i" in cond.get("$options", "") else 0
        return any(isinstance(v, str) and re.search(arg, v, flags) for v in values)
    raise NotImplementedError(op)


def _matches(doc, filt):
    for key, cond in (filt or {}).items():
        values = _resolve(doc, key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            if not all(_check(values, op, arg, cond) for op, arg in cond.items() if op != "$options"):
                return False
        elif cond is None:
            if values and None not in values:
                return False
        elif cond not in values:
            return False
    return True


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    def __init__(self):
        self.docs = []

    def _first(self, filt):
        return next((d for d in self.docs if _matches(d, filt)), None)

    def find_one(self, filt=None):
        doc = self._first(filt)
        return copy.deepcopy(doc) if doc else None

    def find(self, filt=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, filt)])

    def count_documents(self, filt):
        return sum(1 for d in self.docs if _matches(d, filt))

    def insert_one(self, doc):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def insert_many(self, docs):
        return SimpleNamespace(inserted_ids=[self.insert_one(d).inserted_id for d in docs])

    def update_one(self, filt, update, upsert=False):
        doc = self._first(filt)
        if doc is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            doc = {k: v for k, v in filt.items() if not isinstance(v, dict)}
            doc["_id"] = ObjectId()
            self.docs.append(doc)
            doc.update(copy.deepcopy(update.get("$set", {})))
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])
        doc.update(copy.deepcopy(update.get("$set", {})))
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    def find_one_and_update(self, filt, update, return_document=False):
        doc = self._first(filt)
        if doc is None:
            return None
        before = copy.deepcopy(doc)
        doc.update(copy.deepcopy(update.get("$set", {})))
        # pymongo's ReturnDocument.AFTER is True
        return copy.deepcopy(doc) if return_document else before

    def delete_one(self, filt):
        doc = self._first(filt)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)


class FakeDatabase:
    name = "storefront_test"

    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        return self._collections.setdefault(name, FakeCollection())

    def list_collection_names(self):
        return list(self._collections)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


ADMIN_EMAIL = "admin@vastra.in"
ADMIN_PASSWORD = "s3cret-admin"
CUSTOMER_EMAIL = "asha@vastra.in"
CUSTOMER_PASSWORD = "asha-pass"


@pytest.fixture
def fake_db():
    return FakeDatabase()


def make_user(db, email, password, role="customer", **extra):
    user = User(name=email.split("@")[0].title(), email=email, password_hash=hash_password(password), role=role, **extra)
    create_document(db, "user", user)
    return db["user"].find_one({"email": email})


def make_product(db, **overrides):
    data = {
        "title": "Cotton Kurta",
        "slug": "cotton-kurta",
        "price": 1000,
        "mrp": 1200,
        "gst_rate": 18,
        "gst_type": "exclusive",
        "category": "fashion",
        "stock": 10,
    }
    data.update(overrides)
    return create_document(db, "product", Product(**data))


@pytest.fixture
def admin_user(fake_db):
    return make_user(fake_db, ADMIN_EMAIL, ADMIN_PASSWORD, role="admin")


@pytest.fixture
def customer_user(fake_db):
    return make_user(fake_db, CUSTOMER_EMAIL, CUSTOMER_PASSWORD)


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_token(admin_user)}"}


@pytest.fixture
def customer_headers(customer_user):
    return {"Authorization": f"Bearer {create_token(customer_user)}"}


@pytest.fixture
def client(fake_db, monkeypatch):
    monkeypatch.setattr(main, "pending_cancellations", PendingCancellations())
    main.app.dependency_overrides[get_db] = lambda: fake_db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
