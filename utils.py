"""
Utility functions for the cover generator application.
"""
# stdlib imports
import base64
import hashlib
from io import BytesIO
import re

# third-party imports
from PIL import Image, UnidentifiedImageError

# local imports
from constants import (
    DEFAULT_PROJECT_SLUG,
    EXTENSION_MIME_MAP,
    MAX_SLUG_LENGTH,
    ZIP_EXTENSIONS,
    ZIP_MIME_TYPES,
)


# Naming utilities
def slugify_project_name(name: str) -> str:
    """
    Turn a free-form project name into a stable slug.

    "  My Cover -- Draft! " -> "my_cover_draft"
    Names with no usable characters fall back to DEFAULT_PROJECT_SLUG.
    """
    normalized = re.sub(r"[^a-z0-9]+", "_", name.strip().lower())
    normalized = re.sub(r"_{2,}", "_", normalized).strip("_")

    if not normalized:
        return DEFAULT_PROJECT_SLUG

    return normalized[:MAX_SLUG_LENGTH]


def version_label(slug: str, version_number: int) -> str:
    return f"{slug}_v{version_number}"


# File name utilities
def get_file_extension(file_name: str | None) -> str | None:
    """Lowercase extension without the dot, or None when there is none."""
    if not file_name:
        return None
    normalized = file_name.lower()
    dot_index = normalized.rfind(".")
    if dot_index == -1 or dot_index == len(normalized) - 1:
        return None
    return normalized[dot_index + 1:]


def mime_type_for_name(file_name: str | None) -> str | None:
    extension = get_file_extension(file_name)
    return EXTENSION_MIME_MAP.get(extension) if extension else None


def is_zip_upload(file_name: str | None, content_type: str | None) -> bool:
    if content_type and content_type.lower() in ZIP_MIME_TYPES:
        return True
    return bool(file_name) and file_name.lower().endswith(ZIP_EXTENSIONS)


# Image utilities
def encode_data_url(mime_type: str, raw_bytes: bytes) -> str:
    """Build 'data:<mime-type>;base64,<payload>' from raw bytes."""
    return f"data:{mime_type};base64,{base64.b64encode(raw_bytes).decode('utf-8')}"


def read_image_size(image_bytes: bytes) -> tuple[int, int] | None:
    """Return (width, height) or None if Pillow cannot identify the image or refuses it as too large."""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            return img.width, img.height
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError):
        return None


def compute_image_checksum(image_id: str, base64_data: str | None, upload_url: str | None) -> str:
    """
    SHA-256 over the most specific source available.

    The data URL wins over the upload URL, which wins over the image id.
    """
    hasher = hashlib.sha256()
    if base64_data:
        hasher.update(base64_data.encode("utf-8"))
    elif upload_url:
        hasher.update(upload_url.encode("utf-8"))
    else:
        hasher.update(image_id.encode("utf-8"))
    return hasher.hexdigest()
