"""Advertisement lifecycle: submission, edits with image replacement,
status moderation and removal.

Remote images live on the media host; the database record is always the
source of truth, and a remote image that can no longer be referenced is
removed on a best-effort basis.
"""
from datetime import datetime
from typing import Dict, List, Optional

from .errors import NotFoundError, ValidationError
from .media import destroy_quietly
from .utils import normalize_email, parse_object_id, pick_text

AD_TITLE_ALIASES = ("ad_title", "adTitle", "title")
AD_DESCRIPTION_ALIASES = ("description",)
VENDOR_EMAIL_ALIASES = ("vendor_email", "vendorEmail")
IMAGE_URL_ALIASES = ("image_url", "imageUrl")


def create_advertisement(db, media, payload: Dict, image=None, log=None) -> Dict:
    title = pick_text(payload, AD_TITLE_ALIASES)
    description = pick_text(payload, AD_DESCRIPTION_ALIASES)
    vendor_email = normalize_email(pick_text(payload, VENDOR_EMAIL_ALIASES))
    image_url = pick_text(payload, IMAGE_URL_ALIASES)

    if not title or not description or not vendor_email or not (image_url or image):
        raise ValidationError(
            "Title, description, vendor email, and image URL are required!"
        )

    vendor = db.users.find_one({"email": vendor_email})
    if not vendor:
        raise NotFoundError("Vendor not found!")

    uploaded = None
    # only assets this service uploaded may later be destroyed
    image_public_id = None
    if image:
        uploaded = media.upload(image)
        image_url = uploaded["url"]
        image_public_id = uploaded["public_id"]

    timestamp = datetime.utcnow()
    document = {
        "ad_title": title,
        "description": description,
        "vendor_email": vendor_email,
        "vendor_name": vendor.get("name") or "Unknown Vendor",
        "image_url": image_url,
        "image_public_id": image_public_id or None,
        "status": "pending",
        "created_at": timestamp,
        "updated_at": timestamp,
    }
    try:
        db.advertisements.insert_one(document)
    except Exception:
        if uploaded:
            destroy_quietly(media, uploaded["public_id"], log)
        raise
    return document


def list_advertisements(
    db, status: Optional[str] = None, vendor_email: Optional[str] = None
) -> List[Dict]:
    query: Dict[str, str] = {}
    if status:
        query["status"] = status
    if vendor_email:
        query["vendor_email"] = normalize_email(vendor_email)
    return list(db.advertisements.find(query).sort("created_at", -1))


def load_advertisement(db, ad_id) -> Dict:
    object_id = parse_object_id(ad_id, "advertisement identifier")
    advertisement = db.advertisements.find_one({"_id": object_id})
    if not advertisement:
        raise NotFoundError("Advertisement not found.")
    return advertisement


def update_advertisement(db, media, ad_id, payload: Dict, image=None, log=None) -> Dict:
    """Apply text edits and, optionally, swap the advertisement image.

    The new image is uploaded before the record is written. If the write
    fails the new upload is destroyed; once it succeeds the previous image
    is destroyed.
    """
    existing = load_advertisement(db, ad_id)

    updates: Dict[str, object] = {"updated_at": datetime.utcnow()}
    title = pick_text(payload, AD_TITLE_ALIASES)
    if title:
        updates["ad_title"] = title
    description = pick_text(payload, AD_DESCRIPTION_ALIASES)
    if description:
        updates["description"] = description

    uploaded = None
    if image:
        uploaded = media.upload(image)
        updates["image_url"] = uploaded["url"]
        updates["image_public_id"] = uploaded["public_id"]

    try:
        result = db.advertisements.update_one({"_id": existing["_id"]}, {"$set": updates})
    except Exception:
        if uploaded:
            destroy_quietly(media, uploaded["public_id"], log)
        raise

    if result.matched_count == 0:
        if uploaded:
            destroy_quietly(media, uploaded["public_id"], log)
        raise NotFoundError("Advertisement not found.")

    if uploaded and existing.get("image_public_id") != uploaded["public_id"]:
        destroy_quietly(media, existing.get("image_public_id"), log)

    existing.update(updates)
    return existing


def set_advertisement_status(db, ad_id, status) -> Dict:
    """Store ``status`` as given.

    Any non-empty string is accepted; no transition table is enforced
    between pending, approved and rejected.
    """
    if not isinstance(status, str) or not status:
        raise ValidationError("Status is required.")

    advertisement = load_advertisement(db, ad_id)
    updates = {"status": status, "updated_at": datetime.utcnow()}
    db.advertisements.update_one({"_id": advertisement["_id"]}, {"$set": updates})
    advertisement.update(updates)
    return advertisement


def delete_advertisement(db, media, ad_id, log=None) -> Dict:
    advertisement = load_advertisement(db, ad_id)

    result = db.advertisements.delete_one({"_id": advertisement["_id"]})
    if result.deleted_count == 0:
        raise NotFoundError("Advertisement not found.")

    destroy_quietly(media, advertisement.get("image_public_id"), log)
    return advertisement
