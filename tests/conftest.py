import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from cart_store import MemoryCartStore
from schemas import CatalogProduct

ADMIN_EMAIL = "owner@thulodeal.com"


def make_product(pid="p1", price=100, stock=5, sizes=("M", "L"), name=None):
    return CatalogProduct(
        id=pid,
        name=name or f"Product {pid}",
        price=price,
        category="shirts",
        images=[f"https://img.thulodeal.com/{pid}.jpg"],
        sizes=list(sizes),
        stock=stock,
    )


@pytest.fixture
def mongo(monkeypatch):
    fake = mongomock.MongoClient()["thulodeal_test"]
    monkeypatch.setattr(database, "db", fake)
    monkeypatch.setattr(main, "db", fake)
    return fake


@pytest.fixture
def cart_store():
    return MemoryCartStore()


@pytest.fixture
def client(mongo, cart_store, monkeypatch):
    monkeypatch.setattr(main.settings, "ADMIN_EMAILS", ADMIN_EMAIL)
    main.app.dependency_overrides[main.get_cart_store] = lambda: cart_store
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def signup(client, email, name="Asha"):
    resp = client.post("/api/auth/signup", json={"name": name, "email": email, "password": "secret123"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


@pytest.fixture
def shopper(client):
    return signup(client, "asha@thulodeal.com")


@pytest.fixture
def admin(client):
    return signup(client, ADMIN_EMAIL, name="Owner")
