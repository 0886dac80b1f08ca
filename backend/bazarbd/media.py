"""Image hosting through the Cloudinary upload API."""
import hashlib
import logging
import os
import time
from typing import Dict, Optional

import requests
from werkzeug.utils import secure_filename

from .errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {"jpeg", "jpg", "png"}


def allowed_image_extension(filename: str) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in ALLOWED_IMAGE_EXTENSIONS


class CloudinaryClient:
    base_url = "https://api.cloudinary.com/v1_1"

    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str = "bazarbd",
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        self.cloud_name = (cloud_name or "").strip()
        self.api_key = (api_key or "").strip()
        self.api_secret = (api_secret or "").strip()
        self.folder = folder
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def sign(self, params: Dict[str, object]) -> str:
        """SHA-1 signature over the sorted ``key=value`` pairs plus the secret."""
        to_sign = "&".join(
            f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, "")
        )
        return hashlib.sha1(f"{to_sign}{self.api_secret}".encode("utf-8")).hexdigest()

    def _signed_payload(self, params: Dict[str, object]) -> Dict[str, object]:
        params = dict(params, timestamp=int(time.time()))
        params["signature"] = self.sign(params)
        params["api_key"] = self.api_key
        return params

    def _endpoint(self, action: str) -> str:
        return f"{self.base_url}/{self.cloud_name}/image/{action}"

    def upload(self, image_file) -> Dict[str, str]:
        """Upload a werkzeug ``FileStorage`` and return its URL and public id."""
        if not image_file or not getattr(image_file, "filename", ""):
            raise ValidationError("An image file is required.")

        filename = secure_filename(image_file.filename)
        if not filename or not allowed_image_extension(filename):
            raise ValidationError("Unsupported image format. Upload JPEG, JPG, or PNG files.")

        if not self.is_configured:
            raise DependencyError("Image hosting is not configured.")

        payload = self._signed_payload({"folder": self.folder})
        try:
            response = self.session.post(
                self._endpoint("upload"),
                data=payload,
                files={"file": (filename, image_file.stream, image_file.mimetype)},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Cloudinary upload failed for %s: %s", filename, exc)
            raise DependencyError("We could not store the uploaded image. Please try again.")

        secure_url = data.get("secure_url") or data.get("url")
        public_id = data.get("public_id")
        if not secure_url or not public_id:
            logger.error("Cloudinary upload returned an unexpected body: %s", data)
            raise DependencyError("We could not store the uploaded image. Please try again.")

        return {"url": secure_url, "public_id": public_id}

    def destroy(self, public_id: str) -> bool:
        if not public_id:
            return False
        if not self.is_configured:
            raise DependencyError("Image hosting is not configured.")

        payload = self._signed_payload({"public_id": public_id})
        try:
            response = self.session.post(
                self._endpoint("destroy"), data=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise DependencyError(f"Failed to delete image {public_id}: {exc}")

        return data.get("result") == "ok"


def destroy_quietly(media, public_id: Optional[str], log=None) -> None:
    """Best-effort removal of a remote image; failures are only logged."""
    if not public_id:
        return
    try:
        media.destroy(public_id)
    except Exception as exc:
        (log or logger).warning("Unable to delete remote image %s: %s", public_id, exc)
