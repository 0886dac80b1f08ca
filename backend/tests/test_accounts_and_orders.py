from datetime import datetime

from bson import ObjectId

from conftest import FakeResponse


# Users

def test_register_and_fetch_user(client):
    response = client.post(
        "/users", json={"email": "Buyer@Bazar.bd", "name": "Karim", "photoURL": "https://x/y.png"}
    )

    assert response.status_code == 201
    user = response.get_json()["data"]
    assert user["email"] == "buyer@bazar.bd"
    assert user["role"] == "buyer"

    fetched = client.get("/users/BUYER@bazar.bd")
    assert fetched.status_code == 200
    assert fetched.get_json()["data"]["photo_url"] == "https://x/y.png"


def test_register_duplicate_user_conflicts(client):
    client.post("/users", json={"email": "buyer@bazar.bd", "name": "Karim"})

    response = client.post("/users", json={"email": "BUYER@bazar.bd", "name": "Karim again"})

    assert response.status_code == 409


def test_register_requires_valid_email(client):
    assert client.post("/users", json={"name": "No email"}).status_code == 400
    assert client.post("/users", json={"email": "not-an-email"}).status_code == 400


def test_unknown_user_is_not_found(client):
    assert client.get("/users/ghost@bazar.bd").status_code == 404


def test_search_users_by_name_or_email(client, insert_user):
    insert_user(email="rahim@bazar.bd", name="Rahim")
    insert_user(email="karim@bazar.bd", name="Karim")
    insert_user(email="admin@bazar.bd", name="Site (admin)")

    by_name = client.get("/users?search=RAHIM").get_json()["data"]
    by_literal = client.get("/users?search=(admin)").get_json()["data"]
    everyone = client.get("/users").get_json()["data"]

    assert [user["email"] for user in by_name] == ["rahim@bazar.bd"]
    assert [user["email"] for user in by_literal] == ["admin@bazar.bd"]
    assert len(everyone) == 3


def test_role_is_stored_as_given(client, database, insert_user):
    user = insert_user(role="buyer")

    response = client.patch(f"/users/role/{user['_id']}", json={"role": "vendor"})

    assert response.status_code == 200
    assert database.users.find_one({"_id": user["_id"]})["role"] == "vendor"
    assert client.patch(f"/users/role/{user['_id']}", json={}).status_code == 400
    assert client.patch(f"/users/role/{ObjectId()}", json={"role": "admin"}).status_code == 404


# Orders

def test_create_and_list_orders(client, database):
    response = client.post(
        "/orders",
        json={
            "buyerEmail": "Buyer@Bazar.bd",
            "productId": str(ObjectId()),
            "itemName": "Potato",
            "price": 45,
            "_id": "client-chosen",
        },
    )

    assert response.status_code == 201
    order = response.get_json()["data"]
    assert order["buyer_email"] == "buyer@bazar.bd"
    assert order["itemName"] == "Potato"
    assert order["id"] != "client-chosen"

    client.post("/orders", json={"buyerEmail": "other@bazar.bd", "price": 10})

    mine = client.get("/orders?email=buyer@bazar.bd").get_json()["data"]
    assert len(mine) == 1
    assert len(client.get("/all-orders").get_json()["data"]) == 2
    assert database.purchase.count_documents({}) == 2


def test_orders_require_buyer_email(client):
    assert client.post("/orders", json={"price": 10}).status_code == 400
    assert client.post("/orders", json={}).status_code == 400
    assert client.get("/orders").status_code == 400


# Payments

def test_create_payment_intent(client, http_session):
    response = client.post("/create-payment-intent", json={"amountInPoysha": 125000})

    assert response.status_code == 200
    assert response.get_json()["data"] == {"client_secret": "pi_test_1_secret_abc"}
    call = http_session.calls_for("payment_intents")[0]
    assert call["data"] == {
        "amount": 125000,
        "currency": "bdt",
        "payment_method_types[]": "card",
    }
    assert call["auth"] == ("sk_test_123", "")


def test_payment_intent_rejects_bad_amounts(client, http_session):
    assert client.post("/create-payment-intent", json={}).status_code == 400
    assert client.post("/create-payment-intent", json={"amountInPoysha": -5}).status_code == 400
    assert client.post("/create-payment-intent", json={"amountInPoysha": "lots"}).status_code == 400
    assert http_session.calls_for("payment_intents") == []


def test_payment_processor_failure_is_a_dependency_error(client, http_session):
    http_session.payment_response = FakeResponse(
        402, {"error": {"message": "Your card was declined."}}
    )

    response = client.post("/create-payment-intent", json={"amountInPoysha": 500})

    assert response.status_code == 500
    body = response.get_json()
    assert body["error"] == "dependency_error"
    assert body["message"] == "Your card was declined."


# Reviews

def test_create_and_list_reviews(client, insert_product):
    product = insert_product()
    product_id = str(product["_id"])

    older = client.post(
        "/reviews",
        json={"productId": product_id, "rating": 4, "comment": "Good", "date": "2024-05-01"},
    )
    newer = client.post(
        "/reviews",
        json={"productId": product_id, "rating": 2, "comment": "Meh", "date": "2024-05-05"},
    )

    assert older.status_code == 201
    assert newer.status_code == 201

    listed = client.get(f"/reviews/{product_id}").get_json()["data"]
    assert [review["comment"] for review in listed] == ["Meh", "Good"]

    ascending = client.get(f"/reviews?productId={product_id}&sortByDate=asc").get_json()["data"]
    assert [review["comment"] for review in ascending] == ["Good", "Meh"]

    four_stars = client.get(f"/reviews?productId={product_id}&rating=4").get_json()["data"]
    assert [review["comment"] for review in four_stars] == ["Good"]


def test_review_validation(client, insert_product):
    product_id = str(insert_product()["_id"])

    assert client.post("/reviews", json={"rating": 4}).status_code == 400
    assert client.post("/reviews", json={"productId": "nope", "rating": 4}).status_code == 400
    assert client.post("/reviews", json={"productId": product_id, "rating": 9}).status_code == 400
    assert client.get("/reviews?rating=high").status_code == 400


def test_review_listing_without_matches_is_not_found(client):
    response = client.get(f"/reviews?productId={ObjectId()}")

    assert response.status_code == 404
    assert response.get_json()["data"] == []


# Newsletter

def test_newsletter_subscription(client):
    first = client.post("/newsletter", json={"email": "Reader@Bazar.bd"})
    duplicate = client.post("/newsletter", json={"email": "reader@bazar.bd"})

    assert first.status_code == 201
    assert duplicate.status_code == 409
    assert duplicate.get_json()["message"] == "Already subscribed."


def test_newsletter_requires_valid_email(client):
    assert client.post("/newsletter", json={}).status_code == 400
    assert client.post("/newsletter", json={"email": "nope"}).status_code == 400


def test_newsletter_lists_newest_first(client, database):
    database.newsletter.insert_many(
        [
            {"email": "old@bazar.bd", "subscribed_at": datetime(2024, 1, 1)},
            {"email": "new@bazar.bd", "subscribed_at": datetime(2024, 6, 1)},
        ]
    )

    subscribers = client.get("/newsletter").get_json()["data"]

    assert [subscriber["email"] for subscriber in subscribers] == ["new@bazar.bd", "old@bazar.bd"]
    assert subscribers[0]["subscribed_at"] == "2024-06-01T00:00:00Z"


# Envelope

def test_routing_errors_use_the_failure_envelope(client):
    response = client.get("/nowhere")

    assert response.status_code == 404
    assert response.get_json()["success"] is False
    assert response.get_json()["error"] == "http_error"
    assert client.post("/all-orders").status_code == 405


def test_service_endpoints(client):
    assert client.get("/health").get_json() == {"status": "ok"}
    assert client.get("/").get_json()["message"] == "BazarBD server is running..."
