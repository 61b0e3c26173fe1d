"""Shared pytest fixtures for the cover generator tests."""

import os

# Keep the module-level engine off the real database file.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import io
import zipfile
from dataclasses import dataclass, field
from typing import Any, Callable, Generator

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

import db_utils
import services
from api.cloudinary_storage import CloudinaryUploadedAsset
from api.fal_workflow import FalExecutionResult
from db_utils import build_engine, create_db_and_tables, get_db_session
from main import app, get_service
from models import User
from schemas import CloudinaryUploadMetadata
from settings import Settings
from utils import encode_data_url


CLOUDINARY_BASE = "https://res.cloudinary.com/demo/image/upload"


# ---------------------------------------------------------------------------
# Database and settings.
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine shared by every session in one test."""
    test_engine = build_engine("sqlite://", poolclass=StaticPool)
    create_db_and_tables(test_engine)
    try:
        yield test_engine
    finally:
        test_engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        fal_api_key="fal-test-key",
        fal_workflow_path="workflows/test/cover-generator",
        cloudinary_url=None,
        cloudinary_cloud_name="demo",
        cloudinary_api_key="123456",
        cloudinary_api_secret="test-secret",
        cloudinary_upload_folder="cover-generator",
        allowed_origins=["http://localhost:3000"],
        enable_db_ping=False,
        log_level="DEBUG",
    )


@pytest.fixture
def fail_sql(engine: Engine) -> Callable[[str], None]:
    """
    Make statements starting with a prefix fail like a broken database.

    fail_sql("INSERT INTO coverversion") raises OperationalError for that insert
    while every other statement runs normally.
    """
    def install(prefix: str) -> None:
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith(prefix.upper()):
                raise OperationalError(statement, parameters, Exception("disk I/O error"))

        event.listen(engine, "before_cursor_execute", before_cursor_execute)

    return install


@pytest.fixture
def user(db_session: Session) -> User:
    account = User(email="designer@example.com", name="Designer")
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def other_user(db_session: Session) -> User:
    account = User(email="someone-else@example.com")
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture
def auth_headers(user: User) -> dict[str, str]:
    return {"X-User-Id": user.id}


# ---------------------------------------------------------------------------
# Provider fakes.
# ---------------------------------------------------------------------------


@dataclass
class FakeFal:
    """Stands in for the fal workflow; records every submitted input."""
    response: Any = field(default_factory=lambda: {
        "images": [
            {"url": "https://fal.media/files/out-1.png"},
            {"url": "https://fal.media/files/out-2.png"},
        ],
    })
    error: Exception | None = None
    request_id: str = "fal-req-123"
    calls: list[dict] = field(default_factory=list)

    async def run(self, workflow_input: dict, workflow_path: str, api_key: str | None) -> FalExecutionResult:
        self.calls.append(workflow_input)
        if self.error:
            raise self.error
        return FalExecutionResult(request_id=self.request_id, response=self.response)


@dataclass
class FakeCloudinary:
    """Stands in for the media host: hands out deterministic URLs."""
    input_uploads: int = 0
    result_uploads: list[str] = field(default_factory=list)

    async def ensure_images_have_urls(self, images, user_id, settings, job_id=None):
        uploaded = []
        for image in images:
            if image.upload_url:
                uploaded.append(image.model_copy(update={"base64": None}))
                continue
            self.input_uploads += 1
            public_id = f"{settings.cloudinary_upload_folder}/{user_id}/{image.id}"
            uploaded.append(image.model_copy(update={
                "upload_url": f"{CLOUDINARY_BASE}/{public_id}.png",
                "base64": None,
                "cloudinary": CloudinaryUploadMetadata(
                    public_id=public_id,
                    asset_id=f"asset-{image.id}",
                    version=1,
                    folder=f"{settings.cloudinary_upload_folder}/{user_id}",
                ),
            }))
        return uploaded

    async def upload_generated_image(self, url, user_id, settings, job_id=None):
        self.result_uploads.append(url)
        name = url.rsplit("/", 1)[-1]
        secure_url = f"{CLOUDINARY_BASE}/{settings.cloudinary_upload_folder}/{user_id}/results/{name}"
        return CloudinaryUploadedAsset(
            url=secure_url.replace("https://", "http://"),
            secure_url=secure_url,
            public_id=f"results/{name}",
            folder=f"{settings.cloudinary_upload_folder}/{user_id}/results",
        )


@pytest.fixture
def fake_fal(monkeypatch) -> FakeFal:
    fake = FakeFal()
    monkeypatch.setattr(services, "run_fal_workflow", fake.run)
    return fake


@pytest.fixture
def fake_cloudinary(monkeypatch) -> FakeCloudinary:
    fake = FakeCloudinary()
    monkeypatch.setattr(services, "ensure_images_have_urls", fake.ensure_images_have_urls)
    monkeypatch.setattr(services, "upload_generated_image", fake.upload_generated_image)
    return fake


@pytest.fixture
def test_client(engine: Engine, test_settings: Settings, monkeypatch) -> Generator[TestClient, None, None]:
    """TestClient wired to the in-memory engine and test settings."""
    monkeypatch.setattr(db_utils, "engine", engine)

    def override_db_session():
        with Session(engine) as session:
            yield session

    def override_service(db_session: Session = Depends(get_db_session)) -> services.CoverService:
        return services.CoverService(session=db_session, settings=test_settings)

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_service] = override_service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Image and archive builders.
# ---------------------------------------------------------------------------


def _image_bytes(width: int = 64, height: int = 48, fmt: str = "PNG", color: tuple = (200, 40, 40)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def _zip_bytes(entries: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    """Build real image bytes with Pillow: image_bytes(width, height, fmt, color)."""
    return _image_bytes


@pytest.fixture
def zip_bytes() -> Callable[[dict[str, bytes]], bytes]:
    """Build a ZIP archive from {entry_name: bytes}."""
    return _zip_bytes


@pytest.fixture
def data_url_image(image_bytes) -> Callable[..., dict]:
    """Build one inline generation input for POST /api/generate."""
    def build(image_id: str = "img-1", width: int = 64, height: int = 48, color: tuple = (200, 40, 40)) -> dict:
        raw = image_bytes(width, height, "PNG", color)
        return {
            "id": image_id,
            "name": f"{image_id}.png",
            "base64": encode_data_url("image/png", raw),
            "mime_type": "image/png",
            "size_bytes": len(raw),
            "width": width,
            "height": height,
        }
    return build
