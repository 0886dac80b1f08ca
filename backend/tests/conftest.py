import sys
from datetime import datetime
from pathlib import Path

import mongomock
import pytest
import requests

# Make the backend package importable without installing it
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from bazarbd import create_app
from bazarbd.media import CloudinaryClient
from bazarbd.payments import StripeClient


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """Stands in for ``requests.Session`` against Cloudinary and Stripe."""

    def __init__(self):
        self.calls = []
        self.failing_actions = set()
        self.payment_response = FakeResponse(
            200, {"id": "pi_test_1", "client_secret": "pi_test_1_secret_abc"}
        )
        self.upload_count = 0

    def post(self, url, data=None, files=None, auth=None, timeout=None):
        action = url.rsplit("/", 1)[-1]
        self.calls.append({"action": action, "url": url, "data": data, "files": files, "auth": auth})
        if action in self.failing_actions:
            raise requests.ConnectionError(f"{action} unavailable")
        if action == "upload":
            self.upload_count += 1
            public_id = f"bazarbd/ad-{self.upload_count}"
            return FakeResponse(
                200,
                {
                    "secure_url": f"https://res.cloudinary.com/demo/image/upload/{public_id}.png",
                    "public_id": public_id,
                },
            )
        if action == "destroy":
            return FakeResponse(200, {"result": "ok"})
        if action == "payment_intents":
            return self.payment_response
        return FakeResponse(404, {})

    def calls_for(self, action):
        return [call for call in self.calls if call["action"] == action]

    @property
    def destroyed(self):
        return [call["data"]["public_id"] for call in self.calls_for("destroy")]


@pytest.fixture
def database():
    return mongomock.MongoClient()["bazarBD"]


@pytest.fixture
def http_session():
    return FakeSession()


@pytest.fixture
def media(http_session):
    return CloudinaryClient("demo", "key-123", "secret-456", session=http_session)


@pytest.fixture
def payments(http_session):
    return StripeClient("sk_test_123", session=http_session)


@pytest.fixture
def app(database, media, payments):
    app = create_app({"TESTING": True}, database=database, media=media, payments=payments)
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def insert_product(database):
    def _insert(prices=None, **fields):
        document = {
            "item_name": "Potato",
            "item_description": "Fresh local potatoes",
            "market_name": "Karwan Bazar",
            "category": "Vegetables",
            "vendor_email": "vendor@bazar.bd",
            "status": "approved",
            "prices": prices if prices is not None else [],
            "created_at": datetime(2024, 5, 1),
        }
        document.update(fields)
        database.products.insert_one(document)
        return document

    return _insert


@pytest.fixture
def insert_user(database):
    def _insert(email="vendor@bazar.bd", name="Rahim Vendor", role="vendor"):
        document = {
            "email": email,
            "name": name,
            "role": role,
            "created_at": datetime(2024, 1, 1),
        }
        database.users.insert_one(document)
        return document

    return _insert
