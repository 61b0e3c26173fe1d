"""
Shared constants for the cover generator project.
Keeps upload limits, MIME handling and workflow values centralized.
"""

# Upload limits
MAX_IMAGES_PER_BATCH = 60
MAX_IMAGES_PER_PROJECT = 3
MAX_GENERATION_IMAGES = 3

# The workflow always takes exactly this many input images
REQUIRED_IMAGE_COUNT = 3

# Accepted image types
ACCEPTED_IMAGE_TYPES = ("image/png", "image/jpeg", "image/webp")

# Mapping file extensions to MIME types
EXTENSION_MIME_MAP = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}

# ZIP detection
ZIP_MIME_TYPES = (
    "application/zip",
    "application/x-zip-compressed",
    "application/x-zip",
    "multipart/x-zip",
)
ZIP_EXTENSIONS = (".zip",)

# Slug fallback and length cap
DEFAULT_PROJECT_SLUG = "cover_project"
MAX_SLUG_LENGTH = 60

# Request log model id for endpoints that don't call the workflow
HISTORY_MODEL_ID = "history"

# Cloudinary sub-folder for re-hosted workflow outputs
RESULTS_SUBFOLDER = "results"
