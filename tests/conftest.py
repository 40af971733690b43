"""
Pytest configuration and fixtures for the Restroom Finder API tests.

Tests run against an in-memory stand-in for a pymongo ``Database`` that
supports the calls this project makes: find/find_one/insert_one/update_one/
delete_one/find_one_and_update with ``$set``/``$inc``, and client sessions
whose transactions are serialized and roll back on error.
"""
import copy
import pathlib
import re
import sys
import threading
from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _freeze(value):
    if isinstance(value, dict):
        return tuple((k, _freeze(v)) for k, v in value.items())
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def _matches(doc, filt):
    for key, expected in (filt or {}).items():
        if key.startswith("$"):
            raise NotImplementedError(f"Unsupported query operator: {key}")
        actual = doc.get(key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            unsupported = set(expected) - {"$regex", "$options"}
            if unsupported or "$regex" not in expected:
                raise NotImplementedError(f"Unsupported query operator(s): {sorted(unsupported)}")
            flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
            if not isinstance(actual, str) or not re.search(expected["$regex"], actual, flags):
                return False
            continue
        if actual != expected:
            return False
    return True


def _project(doc, projection):
    if not projection:
        return doc
    keep = {k for k, v in projection.items() if v}
    keep.add("_id")
    return {k: v for k, v in doc.items() if k in keep}


def _set_path(doc, path, value):
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _get_path(doc, path):
    target = doc
    for part in path.split("."):
        if not isinstance(target, dict) or part not in target:
            return None
        target = target[part]
    return target


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs
        self._limit = None

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is not None, d.get(key)), reverse=direction < 0)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def __iter__(self):
        docs = self._docs if not self._limit else self._docs[: self._limit]
        return iter(docs)


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = {}

    def _find(self, filt):
        return [doc for doc in self.docs.values() if _matches(doc, filt)]

    def insert_one(self, doc, session=None):
        if "_id" not in doc:
            doc["_id"] = ObjectId()
        key = _freeze(doc["_id"])
        if key in self.docs:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name}")
        self.docs[key] = copy.deepcopy(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    def find_one(self, filt=None, projection=None, session=None):
        found = self._find(filt)
        return _project(copy.deepcopy(found[0]), projection) if found else None

    def find(self, filt=None, projection=None, session=None):
        return FakeCursor([_project(copy.deepcopy(d), projection) for d in self._find(filt)])

    def _apply(self, doc, update):
        for path, value in update.get("$set", {}).items():
            _set_path(doc, path, copy.deepcopy(value))
        for path, amount in update.get("$inc", {}).items():
            _set_path(doc, path, (_get_path(doc, path) or 0) + amount)

    def update_one(self, filt, update, session=None):
        found = self._find(filt)
        if found:
            self._apply(found[0], update)
        return SimpleNamespace(matched_count=len(found[:1]), modified_count=len(found[:1]))

    def find_one_and_update(self, filt, update, return_document=ReturnDocument.BEFORE, session=None):
        found = self._find(filt)
        if not found:
            return None
        before = copy.deepcopy(found[0])
        self._apply(found[0], update)
        return copy.deepcopy(found[0]) if return_document == ReturnDocument.AFTER else before

    def delete_one(self, filt, session=None):
        found = self._find(filt)
        if found:
            del self.docs[_freeze(found[0]["_id"])]
        return SimpleNamespace(deleted_count=len(found[:1]))

    def count_documents(self, filt, session=None):
        return len(self._find(filt))

    def create_index(self, keys, **kwargs):
        return "_".join(f"{k}_{d}" for k, d in keys)


class FakeSession:
    def __init__(self, client):
        self.client = client

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    @contextmanager
    def start_transaction(self):
        with self.client.lock:
            snapshot = {
                name: copy.deepcopy(coll.docs)
                for name, coll in self.client.database.collections.items()
            }
            try:
                yield self
            except BaseException:
                for name, coll in self.client.database.collections.items():
                    coll.docs = snapshot.get(name, {})
                raise


class FakeClient:
    def __init__(self, database):
        self.database = database
        self.lock = threading.RLock()

    def start_session(self):
        return FakeSession(self)


class FakeDatabase:
    def __init__(self, name="restroom_finder_test"):
        self.name = name
        self.collections = {}
        self.client = FakeClient(self)

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]

    def list_collection_names(self):
        return list(self.collections)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def make_restroom(db):
    def _make(**fields):
        doc = {
            "name": "Test Restroom",
            "latitude": 35.2271,
            "longitude": -80.8431,
            "amenities": {},
            "confirmed_amenities": [],
        }
        doc.update(fields)
        return str(db["restroom"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def restroom_id(make_restroom):
    return make_restroom()


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from database import get_db
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


def _signup(client, username, email):
    response = client.post(
        "/api/auth/signup",
        json={"username": username, "email": email, "password": "s3cret-pass"},
    )
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def auth_headers(client):
    return _signup(client, "alice", "alice@example.com")


@pytest.fixture
def other_auth_headers(client):
    return _signup(client, "bobby", "bobby@example.com")


@pytest.fixture
def admin_headers(client, db):
    headers = _signup(client, "admin", "admin@example.com")
    db["user"].update_one({"email": "admin@example.com"}, {"$set": {"role": "admin"}})
    return headers
