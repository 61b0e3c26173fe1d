"""
Cloudinary media hosting.
Uploads user inputs and workflow outputs, and signs direct browser uploads.
"""

# stdlib imports
import asyncio
from dataclasses import dataclass
import logging
import os
import time

# third-party imports
import cloudinary
import cloudinary.uploader
import cloudinary.utils
from fastapi.concurrency import run_in_threadpool

# local imports
from constants import RESULTS_SUBFOLDER
from schemas import CloudinaryUploadMetadata, GenerationImageInput
from settings import Settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CloudinaryUploadedAsset:
    url: str
    secure_url: str
    public_id: str
    folder: str
    bytes: int | None = None
    width: int | None = None
    height: int | None = None


def configure_cloudinary(settings: Settings) -> None:
    """
    Point the SDK at our account.

    CLOUDINARY_URL wins over the individual CLOUDINARY_* variables.

    Raises:
        RuntimeError: If neither form of configuration is present.
    """
    if settings.cloudinary_url:
        os.environ["CLOUDINARY_URL"] = settings.cloudinary_url
        cloudinary.reset_config()
        cloudinary.config(secure=True)
        return

    if not (settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret):
        raise RuntimeError(
            "Missing Cloudinary configuration. Provide CLOUDINARY_URL or CLOUDINARY_CLOUD_NAME, "
            "CLOUDINARY_API_KEY, and CLOUDINARY_API_SECRET."
        )

    cloudinary.config(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        secure=True,
    )


def user_folder(settings: Settings, user_id: str) -> str:
    return f"{settings.cloudinary_upload_folder}/{user_id}"


def _upload_input_image(image: GenerationImageInput, folder: str, user_id: str, job_id: str | None) -> GenerationImageInput:
    if image.upload_url:
        return image.model_copy(update={"base64": None})

    if not image.base64:
        raise ValueError(f'Image "{image.name}" is missing both an upload_url and base64 payload.')

    result = cloudinary.uploader.upload(
        image.base64,
        folder=folder,
        resource_type="image",
        use_filename=True,
        unique_filename=True,
        overwrite=False,
        context={"user_id": user_id, "job_id": job_id or "pending", "image_id": image.id},
    )

    upload_url = result.get("secure_url") or result.get("url")
    if not upload_url:
        raise RuntimeError(f'Cloudinary upload succeeded but returned no URL for image "{image.name}".')

    return image.model_copy(update={
        "upload_url": upload_url,
        "base64": None,
        "size_bytes": result.get("bytes") or image.size_bytes,
        "width": image.width or result.get("width"),
        "height": image.height or result.get("height"),
        "cloudinary": CloudinaryUploadMetadata(
            public_id=result["public_id"],
            asset_id=result.get("asset_id"),
            version=result.get("version"),
            folder=folder,
        ),
    })


async def ensure_images_have_urls(
    images: list[GenerationImageInput],
    user_id: str,
    settings: Settings,
    job_id: str | None = None,
) -> list[GenerationImageInput]:
    """
    Upload every inline (data URL) image and return copies with upload_url set.

    Images that already have an upload_url are passed through with their data
    URL dropped. Order is preserved.
    """
    configure_cloudinary(settings)
    folder = user_folder(settings, user_id)

    uploaded = await asyncio.gather(*[
        run_in_threadpool(_upload_input_image, image, folder, user_id, job_id)
        for image in images
    ])
    logger.info(f"Cloudinary inputs ready: {len(uploaded)} image(s) in {folder}")
    return list(uploaded)


async def upload_generated_image(
    url: str,
    user_id: str,
    settings: Settings,
    job_id: str | None = None,
) -> CloudinaryUploadedAsset:
    """Re-host a workflow output URL under <user folder>/results."""
    if not url:
        raise ValueError("A valid image URL is required to upload to Cloudinary.")

    configure_cloudinary(settings)
    folder = f"{user_folder(settings, user_id)}/{RESULTS_SUBFOLDER}"

    result = await run_in_threadpool(
        cloudinary.uploader.upload,
        url,
        folder=folder,
        resource_type="image",
        use_filename=True,
        unique_filename=True,
        overwrite=False,
        context={"user_id": user_id, "job_id": job_id or "pending", "source": "fal_generated_output"},
    )

    return CloudinaryUploadedAsset(
        url=result.get("url"),
        secure_url=result.get("secure_url") or result.get("url"),
        public_id=result["public_id"],
        folder=folder,
        bytes=result.get("bytes"),
        width=result.get("width"),
        height=result.get("height"),
    )


def build_upload_signature(user_id: str, settings: Settings) -> dict:
    """
    Sign a direct browser upload into the caller's folder.

    Only timestamp and folder are signed; other upload options may be sent
    unsigned.
    """
    configure_cloudinary(settings)
    config = cloudinary.config()

    folder = user_folder(settings, user_id)
    timestamp = int(time.time())
    signature = cloudinary.utils.api_sign_request({"timestamp": timestamp, "folder": folder}, config.api_secret)

    return {
        "signature": signature,
        "timestamp": timestamp,
        "cloud_name": config.cloud_name,
        "api_key": config.api_key,
        "folder": folder,
        "upload_url": f"https://api.cloudinary.com/v1_1/{config.cloud_name}/image/upload",
    }
