import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import config
import database
import main
from database import now
from security import create_access_token, hash_password

PASSWORD = "s3cret-pass"
_PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture(autouse=True)
def email_disabled(monkeypatch):
    monkeypatch.setattr(config, "EMAIL_USER", None)
    monkeypatch.setattr(config, "EMAIL_PASSWORD", None)


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    monkeypatch.setattr(config, "UPLOAD_DIR", str(path))
    return path


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()
    test_db = mongo["storefront_test"]
    database.ensure_indexes(test_db)
    return test_db


@pytest.fixture
def client(db):
    main.app.dependency_overrides[database.get_db] = lambda: db
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="customer", email=None, name=None):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@mail.com"
        result = db["user"].insert_one({
            "name": name or f"{role.title()} {counter['n']}",
            "email": email,
            "password_hash": _PASSWORD_HASH,
            "role": role,
            "created_at": now(),
            "updated_at": now(),
        })
        user = db["user"].find_one({"_id": result.inserted_id})
        token = create_access_token({"sub": str(user["_id"])})
        user["headers"] = {"Authorization": f"Bearer {token}"}
        user["id"] = str(user["_id"])
        return user

    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer")


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def vendor(make_user):
    return make_user("vendor")


@pytest.fixture
def category(db):
    result = db["category"].insert_one({"name": "Books", "description": "Paper things"})
    return db["category"].find_one({"_id": result.inserted_id})


@pytest.fixture
def make_product(db, category):
    def _make(name="Widget", price=10.0, quantity=100, **extra):
        doc = {
            "name": name,
            "price": price,
            "description": f"A {name}",
            "category_id": category["_id"],
            "in_stock": quantity > 0,
            "quantity": quantity,
            "images": [],
            "created_at": now(),
            "updated_at": now(),
        }
        doc.update(extra)
        result = db["product"].insert_one(doc)
        return db["product"].find_one({"_id": result.inserted_id})

    return _make


@pytest.fixture
def missing_id():
    return str(ObjectId())
