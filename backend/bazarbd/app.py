import os
import re
from datetime import datetime
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from . import advertising, catalog
from .errors import ApiError, ConflictError, DependencyError, NotFoundError, ValidationError
from .media import CloudinaryClient
from .payments import StripeClient
from .utils import (
    is_valid_email,
    isoformat,
    normalize_email,
    parse_datetime,
    parse_object_id,
    pick,
    pick_text,
    safe_float,
    safe_int,
    serialize_document,
    to_json_compatible,
)

load_dotenv()

HOME_PRODUCTS_LIMIT = 8
DEFAULT_USER_ROLE = "buyer"
MIN_RATING = 1
MAX_RATING = 5


def create_app(
    test_config: Optional[Dict] = None, database=None, media=None, payments=None
) -> Flask:
    """Create and configure the Flask application.

    ``database`` is a pymongo ``Database``; when omitted it is opened from
    ``MONGO_URI`` through Flask-PyMongo. ``media`` and ``payments`` default
    to the Cloudinary and Stripe clients built from configuration.
    """
    app = Flask(__name__)

    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["MONGO_URI"] = os.getenv(
        "MONGO_URI", "mongodb://localhost:27017/bazarBD"
    )
    max_upload_mb = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))
    app.config["MAX_CONTENT_LENGTH"] = max_upload_mb * 1024 * 1024
    app.config["CLOUDINARY_CLOUD_NAME"] = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    app.config["CLOUDINARY_API_KEY"] = os.getenv("CLOUDINARY_API_KEY", "")
    app.config["CLOUDINARY_API_SECRET"] = os.getenv("CLOUDINARY_API_SECRET", "")
    app.config["CLOUDINARY_FOLDER"] = os.getenv("CLOUDINARY_FOLDER", "bazarbd")
    app.config["STRIPE_SECRET_KEY"] = os.getenv("PAYMENT_GATEWAY_KEY", "")
    app.config["PAYMENT_CURRENCY"] = os.getenv("PAYMENT_CURRENCY", "bdt")
    app.config["HTTP_TIMEOUT_SECONDS"] = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

    if test_config:
        app.config.update(test_config)

    # --- Initialize extensions ---
    allowed_origins = [
        origin.strip()
        for origin in os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")
        if origin.strip()
    ]
    CORS(app, origins=allowed_origins or "*")

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db
        if database is None:
            raise ValueError("MONGO_URI must name the database to use.")
    db = database

    if media is None:
        media = CloudinaryClient(
            app.config["CLOUDINARY_CLOUD_NAME"],
            app.config["CLOUDINARY_API_KEY"],
            app.config["CLOUDINARY_API_SECRET"],
            folder=app.config["CLOUDINARY_FOLDER"],
            timeout=app.config["HTTP_TIMEOUT_SECONDS"],
        )
    if payments is None:
        payments = StripeClient(
            app.config["STRIPE_SECRET_KEY"],
            currency=app.config["PAYMENT_CURRENCY"],
            timeout=app.config["HTTP_TIMEOUT_SECONDS"],
        )

    purchases_collection = db.purchase

    try:
        db.watchlist.create_index(
            [("product_id", 1), ("user_email", 1)], unique=True
        )
    except Exception as exc:
        app.logger.warning("Unable to ensure unique index for watchlist: %s", exc)

    try:
        db.newsletter.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique index for newsletter: %s", exc)

    try:
        db.users.create_index("email", unique=True)
    except Exception as exc:
        app.logger.warning("Unable to ensure unique index for users: %s", exc)

    # --- Helpers ---

    def respond(data=None, message: Optional[str] = None, status: int = 200, **extra):
        body: Dict[str, object] = {"success": True}
        if message:
            body["message"] = message
        if data is not None:
            body["data"] = to_json_compatible(data)
        body.update(extra)
        return jsonify(body), status

    def read_payload() -> Dict:
        if request.form:
            return request.form.to_dict()
        payload = request.get_json(silent=True)
        return payload if isinstance(payload, dict) else {}

    def require_query_email(message: str) -> str:
        email = normalize_email(request.args.get("email"))
        if not email:
            raise ValidationError(message)
        return email

    def serialize_price_entry(entry: Dict) -> Dict:
        observed_at = parse_datetime(entry.get("date"))
        return {
            "price": safe_float(entry.get("price")),
            "date": isoformat(observed_at),
        }

    def serialize_product(product_document) -> Dict:
        if not product_document:
            return {}

        prices = [
            serialize_price_entry(entry)
            for entry in product_document.get("prices") or []
            if isinstance(entry, dict)
        ]
        serialized = {
            "id": str(product_document.get("_id")),
            "item_name": product_document.get("item_name", "") or "",
            "item_description": product_document.get("item_description", "") or "",
            "market_name": product_document.get("market_name", "") or "",
            "category": product_document.get("category", "") or "",
            "vendor_email": product_document.get("vendor_email", "") or "",
            "vendor_name": product_document.get("vendor_name", "") or "",
            "product_image": product_document.get("product_image", "") or "",
            "status": product_document.get("status", "") or "",
            "prices": prices,
            "created_at": isoformat(product_document.get("created_at")),
        }
        if product_document.get("status") == "rejected":
            serialized["rejection_reason"] = product_document.get("rejection_reason", "")
            serialized["rejection_feedback"] = product_document.get("rejection_feedback", "")
        return serialized

    def fetch_product(product_id: str) -> Dict:
        object_id = parse_object_id(product_id, "product identifier")
        product_document = db.products.find_one({"_id": object_id})
        if not product_document:
            raise NotFoundError("Product not found.")
        return product_document

    # --- Error handlers ---

    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(PyMongoError)
    def handle_database_error(error: PyMongoError):
        app.logger.error("Database operation failed on %s: %s", request.path, error)
        return handle_api_error(
            DependencyError("The database request failed. Please try again.")
        )

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return (
            jsonify(
                {
                    "success": False,
                    "error": "http_error",
                    "message": error.description,
                }
            ),
            error.code,
        )

    # --- ROUTES ---

    @app.route("/")
    def index():
        return respond(message="BazarBD server is running...")

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # Products
    @app.route("/products", methods=["POST"])
    def create_product():
        product_document = catalog.build_product_document(read_payload())
        vendor = db.users.find_one({"email": product_document["vendor_email"]})
        if vendor and not product_document.get("vendor_name"):
            product_document["vendor_name"] = vendor.get("name", "") or ""

        db.products.insert_one(product_document)
        return respond(
            serialize_product(product_document),
            message="Product submitted for review.",
            status=201,
        )

    @app.route("/products", methods=["GET"])
    def list_home_products():
        product_docs = db.products.find({"status": "approved"}).limit(HOME_PRODUCTS_LIMIT)
        return respond([serialize_product(document) for document in product_docs])

    @app.route("/products/vendor", methods=["GET"])
    def list_vendor_products():
        email = require_query_email("Vendor email is required.")
        product_docs = db.products.find({"vendor_email": email}).sort("created_at", -1)
        return respond([serialize_product(document) for document in product_docs])

    @app.route("/products/all", methods=["GET"])
    def list_all_products():
        page, size = catalog.parse_pagination(
            request.args.get("page"), request.args.get("size")
        )
        total = db.products.count_documents({})
        product_docs = db.products.find({}).skip(page * size).limit(size)
        return respond(
            [serialize_product(document) for document in product_docs],
            total=total,
            page=page,
            size=size,
        )

    @app.route("/products/all-no-limit", methods=["GET"])
    def list_approved_products():
        product_docs = db.products.find({"status": "approved"})
        return respond([serialize_product(document) for document in product_docs])

    @app.route("/products/search", methods=["GET"])
    def search_products():
        args = request.args
        products, total, page, size = catalog.search_products(
            db.products,
            status=args.get("status"),
            category=args.get("category"),
            day=args.get("date"),
            date_from=args.get("from"),
            date_to=args.get("to"),
            sort=args.get("sort"),
            page=args.get("page"),
            size=args.get("size"),
        )
        return respond(
            [serialize_product(document) for document in products],
            total=total,
            page=page,
            size=size,
        )

    @app.route("/products/<product_id>/price-history", methods=["GET"])
    def get_price_history(product_id: str):
        entries = catalog.price_history(db.products, product_id)
        return respond([serialize_price_entry(entry) for entry in entries])

    @app.route("/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return respond(serialize_product(fetch_product(product_id)))

    @app.route("/products/<product_id>", methods=["PUT"])
    def update_product(product_id: str):
        object_id = parse_object_id(product_id, "product identifier")
        operations = catalog.build_product_update(read_payload())

        result = db.products.update_one({"_id": object_id}, operations)
        if result.matched_count == 0:
            raise NotFoundError("Product not found.")

        return respond(
            serialize_product(db.products.find_one({"_id": object_id})),
            message="Product updated successfully.",
        )

    @app.route("/products/<product_id>", methods=["DELETE"])
    def delete_product(product_id: str):
        object_id = parse_object_id(product_id, "product identifier")
        result = db.products.delete_one({"_id": object_id})
        if result.deleted_count == 0:
            raise NotFoundError("Product not found.")
        return respond({"id": product_id}, message="Product deleted successfully.")

    @app.route("/products/approve/<product_id>", methods=["PATCH"])
    def approve_product(product_id: str):
        object_id = parse_object_id(product_id, "product identifier")
        result = db.products.update_one(
            {"_id": object_id},
            {
                "$set": {"status": "approved"},
                "$unset": {"rejection_reason": "", "rejection_feedback": ""},
            },
        )
        if result.matched_count == 0:
            raise NotFoundError("Product not found.")
        return respond({"id": product_id, "status": "approved"}, message="Product approved.")

    @app.route("/products/reject/<product_id>", methods=["PATCH"])
    def reject_product(product_id: str):
        payload = read_payload()
        reason = pick_text(payload, ("reason",))
        feedback = pick_text(payload, ("feedback",))
        if not reason or not feedback:
            raise ValidationError("Reason and feedback are required.")

        object_id = parse_object_id(product_id, "product identifier")
        result = db.products.update_one(
            {"_id": object_id},
            {
                "$set": {
                    "status": "rejected",
                    "rejection_reason": reason,
                    "rejection_feedback": feedback,
                }
            },
        )
        if result.matched_count == 0:
            raise NotFoundError("Product not found.")
        app.logger.info("Product %s rejected: %s", product_id, reason)
        return respond({"id": product_id, "status": "rejected"}, message="Product rejected.")

    # Reviews
    @app.route("/reviews", methods=["POST"])
    def create_review():
        payload = read_payload()
        product_key = pick_text(payload, ("product_id", "productId"))
        if not product_key:
            raise ValidationError("A product id is required.")
        product_key = str(parse_object_id(product_key, "product identifier"))

        rating = safe_float(pick(payload, ("rating",)))
        if rating is None or not MIN_RATING <= rating <= MAX_RATING:
            raise ValidationError(
                f"Rating must be a number between {MIN_RATING} and {MAX_RATING}."
            )

        review_document = {
            "product_id": product_key,
            "rating": rating,
            "comment": pick_text(payload, ("comment", "review", "text")),
            "user_email": normalize_email(pick_text(payload, ("user_email", "userEmail"))),
            "user_name": pick_text(payload, ("user_name", "userName")),
            "date": parse_datetime(pick(payload, ("date",))) or datetime.utcnow(),
        }
        db.reviews.insert_one(review_document)
        return respond(serialize_document(review_document), message="Review saved.", status=201)

    @app.route("/reviews", methods=["GET"])
    def list_reviews():
        query: Dict[str, object] = {}
        product_key = (request.args.get("productId") or request.args.get("product_id") or "").strip()
        if product_key:
            query["product_id"] = str(parse_object_id(product_key, "product identifier"))

        raw_rating = request.args.get("rating")
        if raw_rating:
            rating = safe_int(raw_rating, None)
            if rating is None:
                raise ValidationError("Rating filter must be a whole number.")
            query["rating"] = rating

        direction = 1 if request.args.get("sortByDate") == "asc" else -1
        reviews = list(db.reviews.find(query).sort("date", direction))
        if not reviews:
            raise NotFoundError("No reviews found.", {"data": []})
        return respond([serialize_document(review) for review in reviews])

    @app.route("/reviews/<product_id>", methods=["GET"])
    def list_product_reviews(product_id: str):
        product_key = str(parse_object_id(product_id, "product identifier"))
        reviews = db.reviews.find({"product_id": product_key}).sort("date", -1)
        return respond([serialize_document(review) for review in reviews])

    # Payments
    @app.route("/create-payment-intent", methods=["POST"])
    def create_payment_intent():
        payload = read_payload()
        raw_amount = pick(payload, ("amount_in_poysha", "amountInPoysha", "amount"))
        amount = None if isinstance(raw_amount, bool) else safe_int(raw_amount, None)
        client_secret = payments.create_payment_intent(amount)
        return respond({"client_secret": client_secret})

    # Watchlist
    @app.route("/watchlist", methods=["POST"])
    def add_watchlist_entry():
        payload = read_payload()
        entry = catalog.add_to_watchlist(
            db,
            pick_text(payload, ("product_id", "productId")),
            pick_text(payload, ("user_email", "userEmail")),
        )
        return respond(serialize_document(entry), message="Added to watchlist.", status=201)

    @app.route("/watchlist", methods=["GET"])
    def list_user_watchlist():
        email = require_query_email("Email is required.")
        entries = db.watchlist.find({"user_email": email}).sort("date", -1)
        return respond([serialize_document(entry) for entry in entries])

    @app.route("/watchlist/all", methods=["GET"])
    def list_all_watchlists():
        entries = db.watchlist.find({}).sort("date", -1)
        return respond([serialize_document(entry) for entry in entries])

    @app.route("/watchlist/<entry_id>", methods=["DELETE"])
    def delete_watchlist_entry(entry_id: str):
        object_id = parse_object_id(entry_id, "watchlist identifier")
        result = db.watchlist.delete_one({"_id": object_id})
        if result.deleted_count == 0:
            raise NotFoundError("Watchlist entry not found.")
        return respond({"id": entry_id}, message="Removed from watchlist.")

    # Users
    @app.route("/users/<email>", methods=["GET"])
    def get_user_by_email(email: str):
        normalized_email = normalize_email(email)
        user_document = db.users.find_one({"email": normalized_email})
        if not user_document:
            raise NotFoundError("User not found.")
        return respond(serialize_document(user_document))

    @app.route("/users", methods=["POST"])
    def register_user():
        payload = read_payload()
        email = normalize_email(pick_text(payload, ("email",)))
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")

        if db.users.find_one({"email": email}):
            raise ConflictError("User already exists.")

        user_document = {
            "email": email,
            "name": pick_text(payload, ("name", "displayName")),
            "role": pick_text(payload, ("role",)) or DEFAULT_USER_ROLE,
            "photo_url": pick_text(payload, ("photo_url", "photoURL", "photo")),
            "created_at": datetime.utcnow(),
        }
        try:
            db.users.insert_one(user_document)
        except DuplicateKeyError:
            raise ConflictError("User already exists.")

        return respond(serialize_document(user_document), message="User registered.", status=201)

    @app.route("/users", methods=["GET"])
    def search_users():
        search_term = (request.args.get("search") or "").strip()
        query: Dict[str, object] = {}
        if search_term:
            regex = re.compile(re.escape(search_term), re.IGNORECASE)
            query["$or"] = [{"name": regex}, {"email": regex}]
        users = db.users.find(query).sort("created_at", -1)
        return respond([serialize_document(user) for user in users])

    @app.route("/users/role/<user_id>", methods=["PATCH"])
    def update_user_role(user_id: str):
        role = pick_text(read_payload(), ("role",))
        if not role:
            raise ValidationError("Role is required.")

        object_id = parse_object_id(user_id, "user identifier")
        result = db.users.update_one({"_id": object_id}, {"$set": {"role": role}})
        if result.matched_count == 0:
            raise NotFoundError("User not found.")

        app.logger.info("User %s role set to %s", user_id, role)
        return respond(
            serialize_document(db.users.find_one({"_id": object_id})),
            message=f"Role updated to {role}.",
        )

    # Orders
    @app.route("/orders", methods=["POST"])
    def create_order():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict) or not payload:
            raise ValidationError("Order details are required.")

        buyer_email = normalize_email(pick_text(payload, ("buyer_email", "buyerEmail")))
        if not buyer_email:
            raise ValidationError("Buyer email is required.")

        order_document = {
            key: value
            for key, value in payload.items()
            if key not in ("_id", "id", "buyerEmail")
        }
        order_document["buyer_email"] = buyer_email
        order_document["created_at"] = datetime.utcnow()

        purchases_collection.insert_one(order_document)
        return respond(serialize_document(order_document), message="Order saved.", status=201)

    @app.route("/orders", methods=["GET"])
    def list_buyer_orders():
        email = require_query_email("Email query is required.")
        orders = purchases_collection.find({"buyer_email": email}).sort("created_at", -1)
        return respond([serialize_document(order) for order in orders])

    @app.route("/all-orders", methods=["GET"])
    def list_all_orders():
        orders = purchases_collection.find({}).sort("created_at", -1)
        return respond([serialize_document(order) for order in orders])

    # Advertisements
    @app.route("/advertisements", methods=["POST"])
    def create_advertisement():
        advertisement = advertising.create_advertisement(
            db, media, read_payload(), image=request.files.get("image"), log=app.logger
        )
        return respond(
            serialize_document(advertisement),
            message="Advertisement submitted successfully!",
            status=201,
        )

    @app.route("/advertisements", methods=["GET"])
    def list_advertisements():
        advertisements = advertising.list_advertisements(
            db,
            status=request.args.get("status"),
            vendor_email=request.args.get("email"),
        )
        return respond([serialize_document(ad) for ad in advertisements])

    @app.route("/advertisements/<ad_id>", methods=["GET"])
    def get_advertisement(ad_id: str):
        return respond(serialize_document(advertising.load_advertisement(db, ad_id)))

    @app.route("/advertisements/<ad_id>", methods=["PUT"])
    def update_advertisement(ad_id: str):
        advertisement = advertising.update_advertisement(
            db,
            media,
            ad_id,
            read_payload(),
            image=request.files.get("image"),
            log=app.logger,
        )
        return respond(
            serialize_document(advertisement),
            message="Advertisement updated successfully.",
        )

    @app.route("/advertisements/<ad_id>", methods=["PATCH"])
    def update_advertisement_status(ad_id: str):
        status = pick(read_payload(), ("status",))
        advertisement = advertising.set_advertisement_status(db, ad_id, status)
        return respond(
            serialize_document(advertisement), message="Status updated successfully."
        )

    @app.route("/advertisements/<ad_id>", methods=["DELETE"])
    def delete_advertisement(ad_id: str):
        advertising.delete_advertisement(db, media, ad_id, log=app.logger)
        return respond({"id": ad_id}, message="Advertisement deleted successfully.")

    # Newsletter
    @app.route("/newsletter", methods=["POST"])
    def subscribe_newsletter():
        email = normalize_email(pick_text(read_payload(), ("email",)))
        if not email:
            raise ValidationError("Email is required.")
        if not is_valid_email(email):
            raise ValidationError("Please provide a valid email address.")

        if db.newsletter.find_one({"email": email}):
            raise ConflictError("Already subscribed.")

        subscriber = {"email": email, "subscribed_at": datetime.utcnow()}
        try:
            db.newsletter.insert_one(subscriber)
        except DuplicateKeyError:
            raise ConflictError("Already subscribed.")

        return respond(serialize_document(subscriber), message="Subscribed successfully.", status=201)

    @app.route("/newsletter", methods=["GET"])
    def list_subscribers():
        subscribers = db.newsletter.find({}).sort("subscribed_at", -1)
        return respond([serialize_document(subscriber) for subscriber in subscribers])

    return app
