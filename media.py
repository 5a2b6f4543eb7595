"""
Image storage on Cloudinary.
"""
from typing import Dict, Optional

import cloudinary
import cloudinary.uploader
import structlog
from cloudinary.exceptions import Error as CloudinaryError

from config import settings
from errors import MediaUploadError, ValidationError

logger = structlog.get_logger(__name__)

ALLOWED_FORMATS = ["jpg", "jpeg", "png", "webp"]

UPLOAD_PROFILES = {
    "products": {
        "folder": "shaaka/products",
        "max_bytes": 5 * 1024 * 1024,
        "transformation": [{"width": 800, "height": 800, "crop": "limit", "quality": "auto:good"}],
    },
    "categories": {
        "folder": "shaaka/categories",
        "max_bytes": 2 * 1024 * 1024,
        "transformation": [{"width": 400, "height": 400, "crop": "fill", "quality": "auto:good"}],
    },
}


def public_id_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parts = url.split("/")
    if len(parts) < 3:
        return None
    filename = parts[-1].split(".")[0]
    return f"{parts[-3]}/{parts[-2]}/{filename}"


def validate_image(content_type: Optional[str], size: int, kind: str) -> Dict:
    profile = UPLOAD_PROFILES.get(kind)
    if profile is None:
        raise ValidationError(f"Unknown upload kind '{kind}'")
    if not content_type or not content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed", errors=[{"field": "file", "message": "not an image"}])
    if size > profile["max_bytes"]:
        limit_mb = profile["max_bytes"] // (1024 * 1024)
        raise ValidationError(f"Image must be smaller than {limit_mb}MB", errors=[{"field": "file", "message": "too large"}])
    return profile


class CloudinaryMedia:
    def __init__(self, cloud_name: str, api_key: str, api_secret: str):
        cloudinary.config(cloud_name=cloud_name, api_key=api_key, api_secret=api_secret, secure=True)

    def upload(self, data: bytes, content_type: Optional[str], kind: str = "products") -> Dict[str, str]:
        profile = validate_image(content_type, len(data), kind)
        try:
            result = cloudinary.uploader.upload(
                data,
                folder=profile["folder"],
                allowed_formats=ALLOWED_FORMATS,
                transformation=profile["transformation"],
            )
        except CloudinaryError as exc:
            logger.error("cloudinary_upload_failed", folder=profile["folder"], error=str(exc))
            raise MediaUploadError("Image upload failed")
        logger.info("cloudinary_uploaded", public_id=result["public_id"])
        return {"url": result["secure_url"], "public_id": result["public_id"]}

    def delete(self, public_id: str) -> None:
        try:
            cloudinary.uploader.destroy(public_id)
        except CloudinaryError as exc:
            logger.error("cloudinary_delete_failed", public_id=public_id, error=str(exc))
            raise MediaUploadError("Image delete failed")


_media: Optional[CloudinaryMedia] = None


def get_media() -> CloudinaryMedia:
    global _media
    if _media is None:
        _media = CloudinaryMedia(settings.CLOUDINARY_CLOUD_NAME, settings.CLOUDINARY_API_KEY, settings.CLOUDINARY_API_SECRET)
    return _media
