"""Product catalog: search, price history and watchlist bookkeeping.

Every helper takes the collection or database it works on, so the Flask
factory decides which MongoDB handle is used and tests can pass a mock.
"""
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from .errors import ConflictError, NotFoundError, ValidationError
from .utils import (
    normalize_email,
    parse_datetime,
    parse_object_id,
    pick,
    pick_text,
    safe_float,
    safe_int,
)

DEFAULT_PAGE = 0
DEFAULT_PAGE_SIZE = 6
MAX_PAGE_SIZE = 100
SORT_DIRECTIONS = ("asc", "desc")
PRODUCT_STATUSES = ("pending", "approved", "rejected")

PRODUCT_FIELD_ALIASES = {
    "item_name": ("item_name", "itemName", "name"),
    "item_description": ("item_description", "itemDescription", "description"),
    "market_name": ("market_name", "marketName"),
    "category": ("category",),
    "vendor_email": ("vendor_email", "vendorEmail"),
    "vendor_name": ("vendor_name", "vendorName"),
    "product_image": ("product_image", "productImage", "image_url", "imageUrl"),
}
PRODUCT_REQUIRED_FIELDS = ("item_name", "market_name", "vendor_email")
PRICE_PER_UNIT_ALIASES = ("price_per_unit", "pricePerUnit")
MARKET_DATE_ALIASES = ("market_date", "marketDate")


def parse_pagination(page, size) -> Tuple[int, int]:
    page_value = safe_int(page, DEFAULT_PAGE)
    size_value = safe_int(size, DEFAULT_PAGE_SIZE)
    if page_value < 0:
        page_value = DEFAULT_PAGE
    if size_value < 1:
        size_value = DEFAULT_PAGE_SIZE
    return page_value, min(size_value, MAX_PAGE_SIZE)


def start_of_day(value, label: str) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValidationError(f"The {label} must be a valid date (YYYY-MM-DD).")
    return parsed.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(day: datetime) -> datetime:
    """Last millisecond of ``day``; stored dates carry millisecond precision."""
    try:
        return day + timedelta(days=1) - timedelta(milliseconds=1)
    except OverflowError:
        # 9999-12-31 has no following day
        return datetime.max.replace(microsecond=999000)


def build_search_query(
    status: Optional[str] = None,
    category: Optional[str] = None,
    day: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> Dict:
    """Translate client filters into a MongoDB predicate.

    The day filter and the range filter are independent existence tests
    over the price list; when both are given a product has to satisfy each.
    """
    query: Dict[str, object] = {}
    if status:
        query["status"] = status
    if category:
        query["category"] = re.compile(f"^{re.escape(category)}$", re.IGNORECASE)

    price_predicates: List[Dict] = []
    if day:
        selected_day = start_of_day(day, "date")
        price_predicates.append(
            {
                "prices": {
                    "$elemMatch": {
                        "date": {
                            "$gte": selected_day,
                            "$lte": end_of_day(selected_day),
                        }
                    }
                }
            }
        )

    if date_from or date_to:
        window: Dict[str, datetime] = {}
        if date_from:
            window["$gte"] = start_of_day(date_from, "start date")
        if date_to:
            window["$lte"] = end_of_day(start_of_day(date_to, "end date"))
        price_predicates.append({"prices": {"$elemMatch": {"date": window}}})

    if len(price_predicates) == 1:
        query.update(price_predicates[0])
    elif price_predicates:
        query["$and"] = price_predicates
    return query


def first_entry_price(product: Dict) -> Optional[float]:
    prices = product.get("prices")
    if not isinstance(prices, list) or not prices:
        return None
    first_entry = prices[0]
    if not isinstance(first_entry, dict):
        return None
    return safe_float(first_entry.get("price"))


def sort_by_first_price(products: List[Dict], direction: Optional[str]) -> List[Dict]:
    """Order products by the price at index zero of their price list.

    Products without a usable first price go to the end for both
    directions. The sort is stable.
    """
    if direction not in SORT_DIRECTIONS:
        return list(products)

    def sort_key(product):
        price = first_entry_price(product)
        if price is None:
            return (1, 0.0)
        return (0, price if direction == "asc" else -price)

    return sorted(products, key=sort_key)


def search_products(
    collection,
    status: Optional[str] = None,
    category: Optional[str] = None,
    day: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    sort: Optional[str] = None,
    page=DEFAULT_PAGE,
    size=DEFAULT_PAGE_SIZE,
) -> Tuple[List[Dict], int, int, int]:
    query = build_search_query(status, category, day, date_from, date_to)
    page_value, size_value = parse_pagination(page, size)

    total = collection.count_documents(query)
    products = list(
        collection.find(query).skip(page_value * size_value).limit(size_value)
    )
    return sort_by_first_price(products, sort), total, page_value, size_value


def price_history(collection, product_id) -> List[Dict]:
    object_id = parse_object_id(product_id, "product identifier")
    product = collection.find_one({"_id": object_id}, {"prices": 1})
    prices = product.get("prices") if product else None
    entries = [entry for entry in prices or [] if isinstance(entry, dict)]
    if not entries:
        raise NotFoundError("No price history found for this product.", {"data": []})

    return sorted(
        entries, key=lambda entry: parse_datetime(entry.get("date")) or datetime.min
    )


def normalize_price_entry(price_value, date_value) -> Dict:
    price = safe_float(price_value)
    if price is None or price < 0:
        raise ValidationError("Every price entry needs a non-negative numeric price.")
    observed_at = parse_datetime(date_value)
    if observed_at is None:
        raise ValidationError("Every price entry needs a valid date.")
    return {"price": round(price, 2), "date": observed_at}


def normalize_price_entries(raw_entries) -> List[Dict]:
    if raw_entries is None:
        return []
    if not isinstance(raw_entries, list):
        raise ValidationError("Prices must be a list of {price, date} entries.")
    entries = []
    for raw_entry in raw_entries:
        if not isinstance(raw_entry, dict):
            raise ValidationError("Prices must be a list of {price, date} entries.")
        entries.append(normalize_price_entry(raw_entry.get("price"), raw_entry.get("date")))
    return entries


def build_product_document(payload: Dict) -> Dict:
    document: Dict[str, object] = {}
    for field, aliases in PRODUCT_FIELD_ALIASES.items():
        value = pick_text(payload, aliases)
        if value:
            document[field] = value

    missing = [field for field in PRODUCT_REQUIRED_FIELDS if not document.get(field)]
    if missing:
        raise ValidationError(
            "Item name, market name, and vendor email are required.",
            {"missing_fields": missing},
        )

    document["vendor_email"] = normalize_email(document["vendor_email"])
    document["prices"] = normalize_price_entries(pick(payload, ("prices",)))
    document["status"] = "pending"
    document["created_at"] = datetime.utcnow()
    return document


def build_product_update(payload: Dict) -> Dict:
    updates: Dict[str, object] = {}
    for field in ("item_name", "item_description", "market_name", "category", "product_image"):
        value = pick_text(payload, PRODUCT_FIELD_ALIASES[field])
        if value:
            updates[field] = value

    operations: Dict[str, Dict] = {}
    if updates:
        operations["$set"] = updates

    raw_price = pick(payload, PRICE_PER_UNIT_ALIASES)
    raw_market_date = pick(payload, MARKET_DATE_ALIASES)
    if raw_price not in (None, "") and raw_market_date not in (None, ""):
        operations["$push"] = {"prices": normalize_price_entry(raw_price, raw_market_date)}

    if not operations:
        raise ValidationError("No product changes were supplied.")
    return operations


def add_to_watchlist(db, product_id, user_email) -> Dict:
    normalized_email = normalize_email(user_email)
    if not product_id or not normalized_email:
        raise ValidationError("Product id and user email are required.")
    object_id = parse_object_id(product_id, "product identifier")
    product_key = str(object_id)

    if db.watchlist.find_one({"product_id": product_key, "user_email": normalized_email}):
        raise ConflictError("Already in watchlist.")

    product = db.products.find_one({"_id": object_id})
    if not product:
        raise NotFoundError("Product not found.")

    entry = {
        "product_id": product_key,
        "user_email": normalized_email,
        "item_name": product.get("item_name") or "Unnamed",
        "market_name": product.get("market_name") or "Unknown",
        "date": datetime.utcnow(),
    }
    try:
        db.watchlist.insert_one(entry)
    except DuplicateKeyError:
        # a concurrent request won the race past the existence check
        raise ConflictError("Already in watchlist.")
    return entry
