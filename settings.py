"""
Environment settings loader for the FastAPI application.
"""
from dataclasses import dataclass
from functools import lru_cache
import os

from dotenv import load_dotenv


load_dotenv()


DEFAULT_FAL_WORKFLOW_PATH = "workflows/erdenizkorkmaz1/cover-generator"


def _env_csv(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True, slots=True)
class Settings:
    """Immutable settings container built from environment variables."""
    database_url: str
    fal_api_key: str | None
    fal_workflow_path: str
    cloudinary_url: str | None
    cloudinary_cloud_name: str | None
    cloudinary_api_key: str | None
    cloudinary_api_secret: str | None
    cloudinary_upload_folder: str
    allowed_origins: list[str]
    enable_db_ping: bool
    log_level: str


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings built from environment variables."""
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///database.db"),
        fal_api_key=os.getenv("FAL_API_KEY"),
        fal_workflow_path=os.getenv("FAL_WORKFLOW_PATH") or DEFAULT_FAL_WORKFLOW_PATH,
        cloudinary_url=os.getenv("CLOUDINARY_URL"),
        cloudinary_cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
        cloudinary_api_key=os.getenv("CLOUDINARY_API_KEY"),
        cloudinary_api_secret=os.getenv("CLOUDINARY_API_SECRET"),
        cloudinary_upload_folder=os.getenv("CLOUDINARY_UPLOAD_FOLDER", "cover-generator"),
        allowed_origins=_env_csv("ALLOWED_ORIGINS", "http://localhost:3000"),
        enable_db_ping=os.getenv("ENABLE_DB_PING", "false").lower() == "true",
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
