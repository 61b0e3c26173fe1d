"""
FastAPI app wiring:
- Loads settings (provider keys, CORS origins) from the environment
- Creates tables on startup through the lifespan handler
- Provides a per-HTTP-request DB Session via Depends
- Resolves the calling user from the X-User-Id header
- Provides CoverService via Depends for endpoints
"""

"""
How callers are identified:
    - Authentication is done by an external provider in front of this API.
      It forwards the signed-in user's id in the X-User-Id header.
    - get_current_user loads that User row; a missing header or unknown id is a 401.
    - POST /api/users registers the local User row the provider's id maps to.
"""
# stdlib
from contextlib import asynccontextmanager
import logging

# third-party
from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session, select
import uvicorn

# local
from aspect_ratios import ASPECT_RATIO_PRESETS, DEFAULT_ASPECT_RATIO_ID
from db_utils import create_db_and_tables, get_db_session
from logging_utils import configure_logging
from models import User
from schemas import (
    BatchManifestRequest,
    CreateGenerationRequest,
    GenerateSelectionRequest,
    SaveCoverVersionRequest,
    SelectVersionRequest,
    UserCreateRequest,
)
from services import CoverService, ServiceError, http_status_for
from settings import get_settings


# 1) settings and logging
settings = get_settings()
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


# 2) App creation
@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create all database tables (idempotent) before accepting requests."""
    create_db_and_tables()
    yield


app = FastAPI(title="Cover Generator API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# 3) Dependency and Service functions
def get_current_user(
    x_user_id: str | None = Header(default=None),
    db_session: Session = Depends(get_db_session),
) -> User:
    """
    Load the caller from the X-User-Id header.

    Raises:
        HTTPException 401: Header missing or no such user.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")

    user = db_session.get(User, x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_service(db_session: Session = Depends(get_db_session)) -> CoverService:
    """
    Create CoverService bound to this request's database connection.

    Depends(get_db_session) means: "Before calling this, first call get_db_session() and give me its returned database connection."
    """
    return CoverService(session=db_session, settings=get_settings())


def _raise_http(error: Exception) -> None:
    """Translate a service error into the matching HTTPException."""
    raise HTTPException(status_code=http_status_for(error), detail=str(error)) from error


if settings.enable_db_ping:
    @app.get("/db/ping")
    def db_ping(db_session: Session = Depends(get_db_session)):
        """
        Lightweight health check for the database connection.

        Returns:
            {"status": "ok"} on success.
        """
        db_session.exec(select(1)).first()
        return {"status": "ok"}


# 4) Users and presets
@app.post("/api/users", status_code=201)
def create_user(payload: UserCreateRequest, service: CoverService = Depends(get_service)):
    """
    Register the local user record for an externally authenticated account.

    Returns:
        The created User. 409 if the email is taken.
    """
    try:
        return service.create_user(payload.email, payload.name)
    except ValueError as e:
        _raise_http(e)


@app.get("/api/users/me")
def read_current_user(user: User = Depends(get_current_user)):
    return user


@app.get("/api/aspect-ratios")
def list_aspect_ratios():
    return {
        "presets": [
            {"id": preset.id, "label": preset.label, "aspect_ratio": preset.aspect_ratio}
            for preset in ASPECT_RATIO_PRESETS
        ],
        "default_id": DEFAULT_ASPECT_RATIO_ID,
    }


# 5) Cover generation
@app.post("/api/generate")
async def generate_cover(
    # Required parameters first
    payload: CreateGenerationRequest,
    # Dependency injection last
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """
    Generate cover images from one to three source images.

    Returns:
        {"job": ThumbnailJob, "result_url": str, "result_urls": list[str]}
    """
    try:
        return await service.generate_cover(user.id, payload)

    # Endpoint layer catches service's ValueError and converts to HTTP response
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/history")
def list_history(
    limit: int = Query(default=10, ge=1, le=50),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """Caller's generation jobs, newest first."""
    return {"jobs": service.list_history(user.id, limit=limit, offset=offset)}


@app.post("/api/upload-signature")
def create_upload_signature(
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """
    Sign a direct browser-to-Cloudinary upload into the caller's folder.

    Large files go straight to the media host instead of through this API.
    """
    try:
        return service.create_upload_signature(user.id)
    except RuntimeError as e:
        logger.error(f"Upload signature failed: {str(e)}")
        raise HTTPException(status_code=500, detail=f"Signature generation failed: {str(e)}")


# 6) Gallery
@app.get("/api/gallery")
def list_gallery(
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    return {"images": service.list_gallery(user.id)}


@app.post("/api/gallery/upload")
async def upload_gallery(
    files: list[UploadFile] = File(...),
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """
    Upload loose images, or a single ZIP of images, to the caller's gallery.

    Returns:
        {"success": True, "count": int}
    """
    try:
        file_payloads = [(file.filename or "", file.content_type, await file.read()) for file in files]
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"File processing failed {str(e)}.")

    try:
        return await service.upload_gallery_files(user.id, file_payloads)
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


# 7) Library
@app.post("/api/library/batch-upload")
async def library_batch_upload(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """
    Import a ZIP archive laid out as <project-folder>/<images> into the library.

    Each folder becomes (or updates) a project with a new version holding up
    to three source images.
    """
    try:
        archive_bytes = await file.read()
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"File processing failed {str(e)}.")

    try:
        return await service.import_library_archive(user.id, archive_bytes, file.filename, file.content_type)
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/api/library/batch-upload/manifest")
async def library_batch_upload_manifest(
    payload: BatchManifestRequest,
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """Same import as /api/library/batch-upload for images the client already uploaded."""
    try:
        return await service.import_library_manifest(user.id, payload.projects)
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/library/projects")
def list_library_projects(
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    return {"projects": service.list_library_projects(user.id)}


@app.post("/api/library/generate-selection")
async def generate_selection(
    payload: GenerateSelectionRequest,
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """
    Run cover generation for the selected library projects.

    Returns:
        {"success": True, "summary": {...}, "errors": [{"project_id", "message"}]}
    """
    try:
        return await service.generate_selection(user.id, payload.project_ids)
    except ValueError as e:
        _raise_http(e)


@app.post("/api/library/save")
def save_cover_version(
    payload: SaveCoverVersionRequest,
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    """Save a successful job as the next version of its project."""
    selected_image_url = str(payload.selected_image_url) if payload.selected_image_url else None
    try:
        return service.save_cover_version(user.id, payload.job_id, selected_image_url)
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/library/projects/{project_id}/results")
def get_project_results(
    project_id: str,
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    try:
        return service.get_project_results(user.id, project_id)
    except ValueError as e:
        _raise_http(e)


@app.post("/api/library/projects/{project_id}/select-version")
def select_project_version(
    project_id: str,
    payload: SelectVersionRequest,
    user: User = Depends(get_current_user),
    service: CoverService = Depends(get_service),
):
    try:
        return service.select_project_version(user.id, project_id, str(payload.image_url))
    except ValueError as e:
        _raise_http(e)
    except ServiceError as e:
        raise HTTPException(status_code=500, detail=str(e))


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
