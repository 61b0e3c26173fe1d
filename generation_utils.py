"""
Helpers shared by the single-cover flow and library generation: building the
workflow input, sanitizing image metadata for storage, and summarizing
inputs for request logs.
"""
# stdlib imports
from typing import TypeVar

# local imports
from constants import REQUIRED_IMAGE_COUNT
from schemas import GenerationImageInput


T = TypeVar("T")

BASE64_PREVIEW_LENGTH = 40


def pad_to_required_count(items: list[T], count: int = REQUIRED_IMAGE_COUNT) -> list[T]:
    """
    Repeat the last item until the list holds `count` entries.

    Longer lists are cut to `count`. An empty list is returned unchanged.
    """
    if not items:
        return []
    padded = list(items[:count])
    while len(padded) < count:
        padded.append(padded[-1])
    return padded


def _resolve_image_source(image: GenerationImageInput) -> str:
    if image.upload_url:
        return str(image.upload_url)
    if image.base64:
        return image.base64
    raise ValueError(f'Image "{image.name}" does not have a valid source.')


def build_fal_workflow_input(images: list[GenerationImageInput], aspect_ratio: str) -> dict:
    """
    Build the workflow arguments: image_url_1..3 plus aspect_ratio.

    Fewer than three images are padded by repeating the last one.

    Raises:
        ValueError: No images, or an image with neither URL nor data URL.
    """
    padded = pad_to_required_count(images)
    if not padded:
        raise ValueError("At least one image is required to run the workflow.")

    workflow_input = {
        f"image_url_{index}": _resolve_image_source(image)
        for index, image in enumerate(padded, start=1)
    }
    workflow_input["aspect_ratio"] = aspect_ratio
    return workflow_input


def sanitize_image_metadata(image: GenerationImageInput) -> dict:
    """
    Storage-safe description of an input image.

    Data URLs are never stored in full: only a short preview and the length.
    """
    base = {
        "id": image.id,
        "name": image.name,
        "mime_type": image.mime_type,
        "size_bytes": image.size_bytes,
        "width": image.width,
        "height": image.height,
    }

    if image.upload_url:
        base["source"] = {
            "type": "url",
            "url": str(image.upload_url),
            "provider": "cloudinary" if image.cloudinary else None,
            "cloudinary_public_id": image.cloudinary.public_id if image.cloudinary else None,
        }
        return base

    data_url = image.base64 or ""
    base["source"] = {
        "type": "base64",
        "preview": data_url[:BASE64_PREVIEW_LENGTH],
        "length": len(data_url),
    }
    return base


def summarize_images_for_logging(images: list[GenerationImageInput]) -> list[dict]:
    return [
        {
            "id": image.id,
            "mime_type": image.mime_type,
            "size_bytes": image.size_bytes,
            "has_url": bool(image.upload_url),
            "has_base64": bool(image.base64),
            "cloudinary_public_id": image.cloudinary.public_id if image.cloudinary else None,
        }
        for image in images
    ]
