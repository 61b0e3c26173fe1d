"""
Request and transfer models for the HTTP API.

Table models live in models.py; everything here is plain pydantic and never
touches the database.
"""
# stdlib imports
from typing import Literal

# third-party imports
from pydantic import BaseModel, Field, HttpUrl, field_validator, model_validator

# local imports
from aspect_ratios import CUSTOM_ASPECT_RATIO_ID
from constants import MAX_GENERATION_IMAGES


ImageMimeType = Literal["image/png", "image/jpeg", "image/webp"]

DATA_URL_PATTERN = r"^data:image/(png|jpeg|jpg|webp);base64,"


class CloudinaryUploadMetadata(BaseModel):
    """Where the media host put an uploaded input image."""
    provider: Literal["cloudinary"] = "cloudinary"
    public_id: str
    asset_id: str | None = None
    version: int | None = None
    folder: str | None = None


class GenerationImageInput(BaseModel):
    """
    One source image, either already hosted (upload_url) or inline (base64 data URL).

    After passing through the media host the image always has an upload_url
    and, when it was uploaded by us, cloudinary metadata.
    """
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    upload_url: HttpUrl | None = None
    base64: str | None = Field(None, pattern=DATA_URL_PATTERN)
    mime_type: ImageMimeType
    size_bytes: int = Field(..., ge=0)
    width: int | None = Field(None, gt=0)
    height: int | None = Field(None, gt=0)
    cloudinary: CloudinaryUploadMetadata | None = None

    @model_validator(mode="after")
    def _require_source(self):
        if not self.upload_url and not self.base64:
            raise ValueError("Either upload_url or base64 is required.")
        return self

    @property
    def upload_url_str(self) -> str | None:
        return str(self.upload_url) if self.upload_url else None


class CreateGenerationRequest(BaseModel):
    project_name: str = Field(..., min_length=3, max_length=80)
    aspect_ratio_id: str = Field(..., min_length=1)
    custom_width: int | None = Field(None, gt=0)
    custom_height: int | None = Field(None, gt=0)
    images: list[GenerationImageInput] = Field(..., min_length=1, max_length=MAX_GENERATION_IMAGES)

    @field_validator("project_name")
    @classmethod
    def _strip_project_name(cls, v: str) -> str:
        stripped = v.strip()
        if len(stripped) < 3:
            raise ValueError("Name must be at least 3 characters.")
        return stripped

    @model_validator(mode="after")
    def _check_custom_dimensions(self):
        if self.aspect_ratio_id == CUSTOM_ASPECT_RATIO_ID and not (self.custom_width and self.custom_height):
            raise ValueError("Custom width and height are required when using a custom aspect ratio.")
        return self

    @property
    def custom_dimensions(self) -> tuple[int, int] | None:
        if self.custom_width and self.custom_height:
            return self.custom_width, self.custom_height
        return None


class UserCreateRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str | None = Field(None, max_length=120)


class SaveCoverVersionRequest(BaseModel):
    job_id: str = Field(..., min_length=1)
    selected_image_url: HttpUrl | None = None


class GenerateSelectionRequest(BaseModel):
    project_ids: list[str] = Field(..., min_length=1)


class SelectVersionRequest(BaseModel):
    image_url: HttpUrl


class ProjectManifest(BaseModel):
    """One project of a pre-uploaded batch import."""
    slug: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    inputs: list[GenerationImageInput] = Field(default_factory=list)


class BatchManifestRequest(BaseModel):
    projects: list[ProjectManifest]


class ProjectGroup(BaseModel):
    """Images bound for one CoverProject during a batch import."""
    slug: str
    name: str
    inputs: list[GenerationImageInput] = Field(default_factory=list)
