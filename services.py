# stdlib imports
import asyncio
from datetime import datetime, timezone
import logging
import time

# third-party imports
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

# local imports
from api.cloudinary_storage import build_upload_signature, ensure_images_have_urls, upload_generated_image
from api.fal_workflow import FalExecutionResult, extract_result_urls, run_fal_workflow
from archive_utils import (
    build_image_input,
    extract_archive_images,
    file_to_image_input,
    load_project_groups,
)
from aspect_ratios import (
    CUSTOM_ASPECT_RATIO_ID,
    DEFAULT_ASPECT_RATIO_ID,
    resolve_aspect_ratio_string,
)
from constants import (
    ACCEPTED_IMAGE_TYPES,
    HISTORY_MODEL_ID,
    MAX_IMAGES_PER_BATCH,
    MAX_IMAGES_PER_PROJECT,
    REQUIRED_IMAGE_COUNT,
)
from generation_utils import (
    build_fal_workflow_input,
    pad_to_required_count,
    sanitize_image_metadata,
    summarize_images_for_logging,
)
from logging_utils import log_session
from models import (
    CoverProject,
    CoverVersion,
    GalleryImage,
    JobStatus,
    LibraryGenerationStatus,
    ThumbnailJob,
    User,
)
from request_log_utils import elapsed_ms, log_request
from schemas import (
    CreateGenerationRequest,
    GenerationImageInput,
    ProjectGroup,
    ProjectManifest,
)
from settings import Settings
from utils import compute_image_checksum, is_zip_upload, slugify_project_name, version_label


logger = logging.getLogger(__name__)


HISTORY_FIELDS = {
    "id",
    "status",
    "aspect_ratio_id",
    "aspect_ratio_string",
    "custom_width",
    "custom_height",
    "fal_result_url",
    "fal_result_urls",
    "fal_request_id",
    "created_at",
    "updated_at",
    "input_images_metadata",
}

GALLERY_FIELDS = {
    "id",
    "project_name",
    "project_slug",
    "upload_url",
    "checksum",
    "mime_type",
    "size_bytes",
    "width",
    "height",
    "aspect_ratio_string",
    "created_at",
}


class NotFoundError(ValueError):
    """A record does not exist or belongs to another user."""


class ConflictError(ValueError):
    """A unique value is already taken."""


class GenerationError(ValueError):
    """The generation workflow or the media host failed."""


class ServiceError(RuntimeError):
    """An internal step failed, usually the database; reported as 500."""


class BatchImportError(ServiceError):
    """A batch import stopped part way; projects imported before it stay saved."""


def http_status_for(error: Exception) -> int:
    """Map a service error to the HTTP status the API reports for it."""
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ConflictError):
        return 409
    if isinstance(error, GenerationError):
        return 502
    if isinstance(error, ValueError):
        return 400
    return 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CoverService:
    """
    Service layer for cover generation and the cover library.

    Wraps one request's database session plus the provider settings. Methods
    raise ValueError subclasses for anything the caller can fix and let
    provider failures surface as GenerationError.
    """

    def __init__(self, session: Session, settings: Settings):
        self.session = session
        self.settings = settings


    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, name: str | None = None) -> User:
        """
        Register a user.

        Raises:
            ConflictError: The email is already registered.
        """
        normalized_email = email.strip().lower()
        existing = self.session.exec(select(User).where(User.email == normalized_email)).first()
        if existing:
            raise ConflictError(f"A user with email {normalized_email} already exists.")

        user = User(email=normalized_email, name=name.strip() if name else None)
        try:
            self.session.add(user)
            self.session.commit()
            self.session.refresh(user)
        except IntegrityError as e:
            self.session.rollback()
            raise ConflictError(f"A user with email {normalized_email} already exists.") from e

        logger.info(f"User created: {user.id}")
        return user


    # ------------------------------------------------------------------
    # Shared persistence helpers
    # ------------------------------------------------------------------

    def _append_version(self, project: CoverProject, **fields) -> CoverVersion:
        """
        Add version latest_version_number + 1 to the project and bump the counter.

        Does not commit; the caller owns the transaction.
        """
        next_version_number = project.latest_version_number + 1
        version = CoverVersion(
            project_id=project.id,
            version_number=next_version_number,
            label=version_label(project.slug, next_version_number),
            **fields,
        )
        project.latest_version_number = next_version_number
        self.session.add(version)
        self.session.add(project)
        return version


    def _latest_version(self, project_id: str) -> CoverVersion | None:
        statement = (
            select(CoverVersion)
            .where(CoverVersion.project_id == project_id)
            .order_by(col(CoverVersion.version_number).desc())
            .limit(1)
        )
        return self.session.exec(statement).first()


    def _find_project_by_slug(self, user_id: str, slug: str) -> CoverProject | None:
        statement = select(CoverProject).where(CoverProject.user_id == user_id, CoverProject.slug == slug)
        return self.session.exec(statement).first()


    def _get_owned_project(self, user_id: str, project_id: str) -> CoverProject:
        project = self.session.get(CoverProject, project_id)
        if not project or project.user_id != user_id:
            raise NotFoundError("Project not found.")
        return project


    def _persist_gallery_uploads(
        self,
        # required params first
        user_id: str,
        originals: list[GenerationImageInput],
        uploaded: list[GenerationImageInput],
        # optional params last
        job_id: str | None = None,
        project_id: str | None = None,
        project_name: str | None = None,
        project_slug: str | None = None,
        aspect_ratio_id: str | None = None,
        aspect_ratio_string: str | None = None,
        is_source_asset: bool = False,
    ) -> int:
        """
        Store uploaded images as GalleryImage rows, skipping checksums the user already has.

        Gallery rows are a side record: a failure here is logged and the
        caller carries on.

        Returns:
            Number of rows inserted.
        """
        existing_checksums = set(self.session.exec(
            select(GalleryImage.checksum).where(GalleryImage.user_id == user_id)
        ).all())

        rows = []
        for original, image in zip(originals, uploaded):
            if not image.upload_url:
                continue

            checksum = compute_image_checksum(original.id, original.base64, original.upload_url_str)
            if checksum in existing_checksums:
                continue
            existing_checksums.add(checksum)

            rows.append(GalleryImage(
                user_id=user_id,
                job_id=job_id,
                project_id=project_id,
                project_name=project_name,
                project_slug=project_slug,
                aspect_ratio_id=aspect_ratio_id,
                aspect_ratio_string=aspect_ratio_string,
                is_source_asset=is_source_asset,
                upload_url=str(image.upload_url),
                checksum=checksum,
                mime_type=image.mime_type,
                size_bytes=image.size_bytes,
                width=image.width,
                height=image.height,
                image_metadata=sanitize_image_metadata(image),
                cloudinary_public_id=image.cloudinary.public_id if image.cloudinary else None,
                cloudinary_asset_id=image.cloudinary.asset_id if image.cloudinary else None,
                cloudinary_folder=image.cloudinary.folder if image.cloudinary else None,
                cloudinary_version=image.cloudinary.version if image.cloudinary else None,
            ))

        if not rows:
            return 0

        try:
            self.session.add_all(rows)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Failed to persist gallery uploads: {str(e)}")
            return 0

        return len(rows)


    def _mark_job_failed(self, job_id: str, message: str, fal_request_id: str | None = None) -> None:
        job = self.session.get(ThumbnailJob, job_id)
        if not job:
            return
        job.status = JobStatus.FAILED
        job.error_message = message
        if fal_request_id:
            job.fal_request_id = fal_request_id
        self.session.add(job)
        self.session.commit()


    async def _run_workflow(self, images: list[GenerationImageInput], aspect_ratio_string: str) -> FalExecutionResult:
        """
        Run the workflow on the (padded) images.

        Raises:
            GenerationError: The workflow call failed.
        """
        workflow_input = build_fal_workflow_input(images, aspect_ratio_string)

        # No open transaction may be held across the workflow call
        log_session("before fal workflow", self.session, __name__)
        try:
            fal_result = await run_fal_workflow(
                workflow_input,
                self.settings.fal_workflow_path,
                self.settings.fal_api_key,
            )
        except Exception as e:
            logger.error(f"Fal workflow failed: {str(e)}")
            raise GenerationError(f"Image generation failed: {str(e)}") from e
        log_session("after fal workflow", self.session, __name__)
        return fal_result


    @staticmethod
    def _require_result_urls(fal_result: FalExecutionResult) -> list[str]:
        result_urls = extract_result_urls(fal_result.response)
        if not result_urls:
            raise GenerationError("Fal workflow did not return any image URLs.")
        return result_urls


    async def _rehost_results(self, result_urls: list[str], user_id: str, job_id: str) -> list[str]:
        try:
            uploaded_results = await asyncio.gather(*[
                upload_generated_image(url, user_id, self.settings, job_id=job_id)
                for url in result_urls
            ])
        except Exception as e:
            raise GenerationError(f"Unable to upload generated cover images: {str(e)}") from e
        return [asset.secure_url for asset in uploaded_results]


    async def _upload_inputs(self, images: list[GenerationImageInput], user_id: str) -> list[GenerationImageInput]:
        try:
            uploaded = await ensure_images_have_urls(images, user_id, self.settings)
        except ValueError:
            raise
        except Exception as e:
            raise GenerationError(f"Unable to upload images to Cloudinary: {str(e)}") from e

        missing = [image for image in uploaded if not image.upload_url]
        if missing:
            raise GenerationError(f"{len(missing)} image(s) are missing upload_url after Cloudinary upload.")
        return uploaded


    # ------------------------------------------------------------------
    # Single cover generation
    # ------------------------------------------------------------------

    async def generate_cover(self, user_id: str, payload: CreateGenerationRequest) -> dict:
        """
        Upload inputs, run the cover workflow and re-host its outputs.

        Every call writes a RequestLog row, whatever the outcome. Once the job
        row exists any failure marks it FAILED with the error message.

        Args:
            user_id: Caller's user id.
            payload: Validated generation request.

        Returns:
            {"job": ThumbnailJob, "result_url": str, "result_urls": list[str]}

        Raises:
            ValueError: Unknown aspect ratio or invalid inputs (400).
            GenerationError: Workflow or media host failure (502).
            ServiceError: Anything else, such as a database failure (500).
        """
        started_at = time.perf_counter()
        response_status = 500
        fal_request_id = None
        job_id = None
        images_for_logging = payload.images

        try:
            aspect_ratio_string = resolve_aspect_ratio_string(payload.aspect_ratio_id, payload.custom_dimensions)
            project_slug = slugify_project_name(payload.project_name)

            uploaded = await self._upload_inputs(payload.images, user_id)
            images_for_logging = uploaded

            sanitized = [sanitize_image_metadata(image) for image in pad_to_required_count(uploaded)]

            job = ThumbnailJob(
                user_id=user_id,
                status=JobStatus.PENDING,
                aspect_ratio_id=payload.aspect_ratio_id,
                aspect_ratio_string=aspect_ratio_string,
                custom_width=payload.custom_width,
                custom_height=payload.custom_height,
                input_image_1=sanitized[0],
                input_image_2=sanitized[1],
                input_image_3=sanitized[2],
                input_images_metadata=sanitized,
                project_name=payload.project_name,
                project_slug=project_slug,
            )
            self.session.add(job)
            self.session.commit()
            job_id = job.id

            self._persist_gallery_uploads(
                user_id,
                payload.images,
                uploaded,
                job_id=job_id,
                project_name=payload.project_name,
                project_slug=project_slug,
                aspect_ratio_id=payload.aspect_ratio_id,
                aspect_ratio_string=aspect_ratio_string,
            )

            job = self.session.get(ThumbnailJob, job_id)
            job.status = JobStatus.RUNNING
            self.session.add(job)
            self.session.commit()

            fal_result = await self._run_workflow(uploaded, aspect_ratio_string)
            fal_request_id = fal_result.request_id
            workflow_urls = self._require_result_urls(fal_result)

            result_urls = await self._rehost_results(workflow_urls, user_id, job_id)

            job = self.session.get(ThumbnailJob, job_id)
            job.status = JobStatus.SUCCESS
            job.fal_request_id = fal_request_id
            job.fal_result_url = result_urls[0]
            job.fal_result_urls = result_urls
            job.error_message = None
            self.session.add(job)
            self.session.commit()
            self.session.refresh(job)

            response_status = 200
            logger.info(f"Cover generated: job={job.id} results={len(result_urls)}")
            return {"job": job, "result_url": result_urls[0], "result_urls": result_urls}

        except Exception as e:
            self.session.rollback()
            response_status = http_status_for(e)
            logger.error(f"Cover generation failed: {str(e)}")

            if job_id:
                try:
                    self._mark_job_failed(job_id, str(e), fal_request_id)
                except SQLAlchemyError as mark_error:
                    self.session.rollback()
                    logger.error(f"Failed to mark job {job_id} as FAILED: {str(mark_error)}")

            if isinstance(e, ValueError):
                raise
            raise ServiceError(f"Cover generation failed: {str(e)}") from e

        finally:
            log_request(
                endpoint="/api/generate",
                model_id=self.settings.fal_workflow_path,
                response_status=response_status,
                response_time_ms=elapsed_ms(started_at),
                user_id=user_id,
                aspect_ratio_id=payload.aspect_ratio_id,
                input_image_count=len(payload.images),
                fal_request_id=fal_request_id,
                request_payload_summary={
                    "has_custom_dimensions": (
                        payload.aspect_ratio_id == CUSTOM_ASPECT_RATIO_ID
                        and payload.custom_dimensions is not None
                    ),
                    "images": summarize_images_for_logging(images_for_logging),
                },
            )


    def list_history(self, user_id: str, limit: int = 10, offset: int = 0) -> list[dict]:
        """Caller's jobs, newest first. Writes a RequestLog row per call."""
        started_at = time.perf_counter()
        response_status = 500
        try:
            statement = (
                select(ThumbnailJob)
                .where(ThumbnailJob.user_id == user_id)
                .order_by(col(ThumbnailJob.created_at).desc())
                .offset(offset)
                .limit(limit)
            )
            jobs = [job.model_dump(include=HISTORY_FIELDS) for job in self.session.exec(statement).all()]
            response_status = 200
            return jobs
        finally:
            log_request(
                endpoint="/api/history",
                model_id=HISTORY_MODEL_ID,
                response_status=response_status,
                response_time_ms=elapsed_ms(started_at),
                user_id=user_id,
            )


    def create_upload_signature(self, user_id: str) -> dict:
        return build_upload_signature(user_id, self.settings)


    # ------------------------------------------------------------------
    # Gallery
    # ------------------------------------------------------------------

    def list_gallery(self, user_id: str) -> list[dict]:
        statement = (
            select(GalleryImage)
            .where(GalleryImage.user_id == user_id)
            .order_by(col(GalleryImage.created_at).desc())
        )
        return [image.model_dump(include=GALLERY_FIELDS) for image in self.session.exec(statement).all()]


    async def upload_gallery_files(self, user_id: str, files: list[tuple[str, str | None, bytes]]) -> dict:
        """
        Upload loose images, or the images inside exactly one ZIP, to the gallery.

        Args:
            user_id: Caller's user id.
            files: (file_name, content_type, raw_bytes) per uploaded file.

        Returns:
            {"success": True, "count": int}

        Raises:
            ValueError: Empty selection, ZIP misuse, unsupported file or too many images.
            BatchImportError: Upload or persistence failed.
        """
        if not files:
            raise ValueError("Select at least one file to upload.")

        zip_count = sum(1 for name, content_type, _ in files if is_zip_upload(name, content_type))
        if zip_count > 1:
            raise ValueError("Upload one ZIP archive at a time.")
        if zip_count == 1 and len(files) > 1:
            raise ValueError("ZIP uploads cannot be mixed with other files.")
        if zip_count == 0 and len(files) > MAX_IMAGES_PER_BATCH:
            raise ValueError(f"Upload up to {MAX_IMAGES_PER_BATCH} images at a time.")

        inputs: list[GenerationImageInput] = []
        for name, content_type, data in files:
            if is_zip_upload(name, content_type):
                inputs.extend(
                    build_image_input(image.name, image.mime_type, image.data)
                    for image in extract_archive_images(data, limit=MAX_IMAGES_PER_BATCH)
                )
            else:
                inputs.append(file_to_image_input(name, content_type, data))

        if not inputs:
            raise ValueError("No supported images were found in your selection.")
        if len(inputs) > MAX_IMAGES_PER_BATCH:
            raise ValueError(f"Upload up to {MAX_IMAGES_PER_BATCH} images at a time.")

        try:
            uploaded = await ensure_images_have_urls(inputs, user_id, self.settings)
            self._persist_gallery_uploads(user_id, inputs, uploaded)
        except Exception as e:
            self.session.rollback()
            logger.error(f"Gallery upload failed: {str(e)}")
            raise BatchImportError(f"Gallery upload failed: {str(e)}") from e

        logger.info(f"Gallery upload completed: {len(uploaded)} image(s)")
        return {"success": True, "count": len(uploaded)}


    # ------------------------------------------------------------------
    # Library imports
    # ------------------------------------------------------------------

    async def import_library_archive(
        self,
        user_id: str,
        archive_bytes: bytes,
        file_name: str | None,
        content_type: str | None,
    ) -> dict:
        """
        Import a ZIP of project folders into the library.

        Raises:
            ValueError: Not a ZIP, a corrupt entry, no usable images or too many images.
            BatchImportError: A project failed to import.
        """
        if not is_zip_upload(file_name, content_type):
            raise ValueError("Upload a single .zip archive structured by project folders.")

        grouped = load_project_groups(archive_bytes)
        return await self._import_project_groups(user_id, grouped.groups, grouped.skipped)


    async def import_library_manifest(self, user_id: str, projects: list[ProjectManifest]) -> dict:
        """
        Import projects whose images the client already uploaded with a signature.

        Raises:
            ValueError: An input without upload_url, no images or too many images.
            BatchImportError: A project failed to import.
        """
        groups: dict[str, ProjectGroup] = {}
        skipped = 0

        for project in projects:
            missing = [image for image in project.inputs if not image.upload_url]
            if missing:
                raise ValueError(f'Project "{project.name}" has {len(missing)} image(s) missing upload_url.')

            group = groups.setdefault(project.slug, ProjectGroup(slug=project.slug, name=project.name))
            for image in project.inputs:
                if len(group.inputs) >= MAX_IMAGES_PER_PROJECT:
                    skipped += 1
                    continue
                group.inputs.append(image)

        return await self._import_project_groups(user_id, list(groups.values()), skipped)


    async def _import_project_groups(self, user_id: str, groups: list[ProjectGroup], skipped: int) -> dict:
        """
        Upload each group's images and record one new project version per group.

        Each project gets its own transaction. The first failure stops the
        import; projects imported before it stay committed.
        """
        total_images = sum(len(group.inputs) for group in groups)
        if total_images == 0:
            raise ValueError("No supported images were found under project folders.")
        if total_images > MAX_IMAGES_PER_BATCH:
            raise ValueError(f"Upload up to {MAX_IMAGES_PER_BATCH} images per archive.")

        stats = {"projects": 0, "projects_created": 0, "assets": 0, "skipped": skipped}

        for group in groups:
            if not group.inputs:
                continue
            stats["projects"] += 1

            try:
                uploaded = await ensure_images_have_urls(group.inputs, user_id, self.settings)
                if not uploaded or not uploaded[0].upload_url:
                    raise RuntimeError("Unable to resolve Cloudinary URL for the first asset.")

                source_urls = [image.upload_url_str for image in uploaded[:REQUIRED_IMAGE_COUNT]]
                source_urls += [None] * (REQUIRED_IMAGE_COUNT - len(source_urls))

                project = self._find_project_by_slug(user_id, group.slug)
                created = project is None
                if created:
                    project = CoverProject(user_id=user_id, name=group.name, slug=group.slug)
                    self.session.add(project)
                    self.session.flush()

                self._append_version(
                    project,
                    thumbnail_job_id=None,
                    selected_image_url="",
                    source_image_1_url=source_urls[0],
                    source_image_2_url=source_urls[1],
                    source_image_3_url=source_urls[2],
                )
                project.name = group.name
                project.library_selected = True
                project.library_generation_status = LibraryGenerationStatus.WAITING
                project.library_generation_job_id = None
                project.library_generation_queued_at = None
                project.library_generation_completed_at = None
                self.session.add(project)
                self.session.commit()
                self.session.refresh(project)

            except Exception as e:
                self.session.rollback()
                logger.error(f"Library import failed on project {group.slug}: {str(e)}")
                raise BatchImportError(f"Batch upload failed on project {group.name}: {str(e)}") from e

            if created:
                stats["projects_created"] += 1

            self._persist_gallery_uploads(
                user_id,
                group.inputs,
                uploaded,
                project_id=project.id,
                project_name=project.name,
                project_slug=project.slug,
                is_source_asset=True,
            )
            stats["assets"] += len(uploaded)

        logger.info(
            f"Library import completed: {stats['projects']} project(s), "
            f"{stats['projects_created']} created, {stats['assets']} asset(s), {stats['skipped']} skipped"
        )
        return {"success": True, "stats": stats}


    # ------------------------------------------------------------------
    # Library views and generation
    # ------------------------------------------------------------------

    def list_library_projects(self, user_id: str) -> list[dict]:
        statement = (
            select(CoverProject)
            .where(CoverProject.user_id == user_id)
            .order_by(col(CoverProject.updated_at).desc())
        )
        projects = []
        for project in self.session.exec(statement).all():
            latest = self._latest_version(project.id)
            entry = project.model_dump()
            entry["latest_version"] = latest.model_dump() if latest else None
            projects.append(entry)
        return projects


    def _build_inputs_from_assets(self, project: CoverProject) -> list[GenerationImageInput]:
        """
        Source images for library generation, padded to three.

        Prefers the project's source gallery assets (oldest first) and falls
        back to the latest version's source URLs.
        """
        statement = (
            select(GalleryImage)
            .where(GalleryImage.project_id == project.id, GalleryImage.is_source_asset == True)  # noqa: E712
            .order_by(col(GalleryImage.created_at).asc())
        )
        assets = [asset for asset in self.session.exec(statement).all() if asset.upload_url]

        inputs = [
            GenerationImageInput(
                id=f"{asset.id}-{index}",
                name=(asset.image_metadata or {}).get("name") or f"{project.slug}-source-{index + 1}",
                upload_url=asset.upload_url,
                mime_type=asset.mime_type if asset.mime_type in ACCEPTED_IMAGE_TYPES else "image/png",
                size_bytes=asset.size_bytes,
                width=asset.width,
                height=asset.height,
            )
            for index, asset in enumerate(assets[:REQUIRED_IMAGE_COUNT])
        ]

        if not inputs:
            latest = self._latest_version(project.id)
            version_sources = [
                url for url in (
                    latest.source_image_1_url,
                    latest.source_image_2_url,
                    latest.source_image_3_url,
                ) if url
            ] if latest else []
            inputs = [
                GenerationImageInput(
                    id=f"{project.id}-source-{index}",
                    name=f"{project.slug}-source-{index + 1}",
                    upload_url=url,
                    mime_type="image/png",
                    size_bytes=0,
                )
                for index, url in enumerate(version_sources[:REQUIRED_IMAGE_COUNT])
            ]

        if not inputs:
            return []

        while len(inputs) < REQUIRED_IMAGE_COUNT:
            last = inputs[-1]
            inputs.append(last.model_copy(update={"id": f"{last.id}-dup{len(inputs)}"}))
        return inputs


    @staticmethod
    def _derive_aspect_ratio(inputs: list[GenerationImageInput]) -> tuple[str, str, int | None, int | None]:
        """(aspect_ratio_id, aspect_ratio_string, custom_width, custom_height) from the first input."""
        first = inputs[0]
        if first.width and first.height:
            ratio = resolve_aspect_ratio_string(CUSTOM_ASPECT_RATIO_ID, (first.width, first.height))
            return CUSTOM_ASPECT_RATIO_ID, ratio, first.width, first.height
        return DEFAULT_ASPECT_RATIO_ID, resolve_aspect_ratio_string(DEFAULT_ASPECT_RATIO_ID), None, None


    async def _generate_for_project(self, project_id: str, user_id: str) -> None:
        """
        Run one library project through the workflow and save the outcome as a new version.

        On failure the job (if created) and the project are marked FAILED and
        the error is re-raised.
        """
        job_id = None
        fal_request_id = None
        queued_at = _utcnow()

        try:
            project = self.session.get(CoverProject, project_id)
            inputs = self._build_inputs_from_assets(project)
            if not inputs:
                raise ValueError("No source images available for this project.")

            aspect_ratio_id, aspect_ratio_string, custom_width, custom_height = self._derive_aspect_ratio(inputs)
            uploaded = await self._upload_inputs(inputs, user_id)
            sanitized = [sanitize_image_metadata(image) for image in pad_to_required_count(uploaded)]

            job = ThumbnailJob(
                user_id=user_id,
                status=JobStatus.PENDING,
                aspect_ratio_id=aspect_ratio_id,
                aspect_ratio_string=aspect_ratio_string,
                custom_width=custom_width,
                custom_height=custom_height,
                input_image_1=sanitized[0],
                input_image_2=sanitized[1],
                input_image_3=sanitized[2],
                input_images_metadata=sanitized,
                project_name=project.name,
                project_slug=project.slug,
            )
            self.session.add(job)
            self.session.flush()
            job_id = job.id

            project.library_generation_status = LibraryGenerationStatus.GENERATING
            project.library_generation_job_id = job_id
            project.library_generation_queued_at = queued_at
            job.status = JobStatus.RUNNING
            self.session.add(project)
            self.session.add(job)
            self.session.commit()

            fal_result = await self._run_workflow(uploaded, aspect_ratio_string)
            fal_request_id = fal_result.request_id
            workflow_urls = self._require_result_urls(fal_result)
            result_urls = await self._rehost_results(workflow_urls, user_id, job_id)

            project = self.session.get(CoverProject, project_id)
            source_urls = [image.upload_url_str for image in uploaded[:REQUIRED_IMAGE_COUNT]]
            self._append_version(
                project,
                thumbnail_job_id=job_id,
                selected_image_url=result_urls[0],
                generated_image_urls=result_urls,
                source_image_1_url=source_urls[0],
                source_image_2_url=source_urls[1],
                source_image_3_url=source_urls[2],
            )
            project.library_generation_status = LibraryGenerationStatus.COMPLETED
            project.library_generation_completed_at = _utcnow()
            project.library_generation_job_id = job_id

            job = self.session.get(ThumbnailJob, job_id)
            job.status = JobStatus.SUCCESS
            job.fal_request_id = fal_request_id
            job.fal_result_url = result_urls[0]
            job.fal_result_urls = result_urls
            job.error_message = None
            self.session.add(job)
            self.session.commit()

            logger.info(f"Library generation completed: project={project_id} job={job_id}")

        except Exception as e:
            self.session.rollback()
            logger.error(f"Library generation failed for project {project_id}: {str(e)}")

            if job_id and self.session.get(ThumbnailJob, job_id) is None:
                # the job insert was rolled back with everything else
                job_id = None

            try:
                if job_id:
                    job = self.session.get(ThumbnailJob, job_id)
                    job.status = JobStatus.FAILED
                    job.error_message = str(e)
                    if fal_request_id:
                        job.fal_request_id = fal_request_id
                    self.session.add(job)

                project = self.session.get(CoverProject, project_id)
                project.library_generation_status = LibraryGenerationStatus.FAILED
                project.library_generation_completed_at = _utcnow()
                project.library_generation_job_id = job_id
                self.session.add(project)
                self.session.commit()
            except SQLAlchemyError as mark_error:
                self.session.rollback()
                logger.error(f"Failed to mark project {project_id} as FAILED: {str(mark_error)}")

            raise


    async def generate_selection(self, user_id: str, project_ids: list[str]) -> dict:
        """
        Generate covers for the selected WAITING or FAILED projects, one at a time.

        A failing project does not stop the others; its error is collected.

        Raises:
            ValueError: None of the ids is an eligible project of the caller.
        """
        statement = (
            select(CoverProject)
            .where(
                CoverProject.user_id == user_id,
                col(CoverProject.id).in_(project_ids),
                col(CoverProject.library_generation_status).in_(
                    [LibraryGenerationStatus.WAITING, LibraryGenerationStatus.FAILED]
                ),
            )
            .order_by(col(CoverProject.updated_at).desc())
        )
        selected_ids = [project.id for project in self.session.exec(statement).all()]
        if not selected_ids:
            raise ValueError("Selected projects are either missing or already processing.")

        summary = {"processed": 0, "completed": 0, "failed": 0}
        errors = []

        for project_id in selected_ids:
            summary["processed"] += 1
            try:
                await self._generate_for_project(project_id, user_id)
                summary["completed"] += 1
            except Exception as e:
                summary["failed"] += 1
                errors.append({"project_id": project_id, "message": str(e)})

        return {"success": True, "summary": summary, "errors": errors}


    # ------------------------------------------------------------------
    # Saving and selecting versions
    # ------------------------------------------------------------------

    def save_cover_version(self, user_id: str, job_id: str, selected_image_url: str | None = None) -> dict:
        """
        Save a finished job as the next version of its project.

        The project is found by the job's slug and created on first save.

        Raises:
            NotFoundError: The job does not exist for this user.
            ValueError: The job has not succeeded or has no project name.
            ServiceError: The version could not be written.
        """
        job = self.session.get(ThumbnailJob, job_id)
        if not job or job.user_id != user_id:
            raise NotFoundError("Job not found.")
        if job.status != JobStatus.SUCCESS or not job.fal_result_url:
            raise ValueError("Generate a cover before saving it.")

        project_name = (job.project_name or "").strip()
        if not project_name:
            raise ValueError("This job was created without a name.")

        project_slug = job.project_slug or slugify_project_name(project_name)
        generated_urls = [url for url in (job.fal_result_urls or []) if isinstance(url, str)]

        try:
            project = self._find_project_by_slug(user_id, project_slug)
            if project is None:
                project = CoverProject(user_id=user_id, name=project_name, slug=project_slug)
                self.session.add(project)
                self.session.flush()
            else:
                project.name = project_name

            version = self._append_version(
                project,
                thumbnail_job_id=job.id,
                selected_image_url=selected_image_url or job.fal_result_url,
                generated_image_urls=generated_urls or None,
            )
            self.session.commit()
            self.session.refresh(project)
            self.session.refresh(version)

        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Saving cover version failed: {str(e)}")
            raise ServiceError(f"Saving cover version failed: {str(e)}") from e

        logger.info(f"Cover version saved: {version.label}")
        return {
            "project": {
                "id": project.id,
                "name": project.name,
                "slug": project.slug,
                "latest_version_number": project.latest_version_number,
            },
            "version": {
                "id": version.id,
                "version_number": version.version_number,
                "label": version.label,
                "selected_image_url": version.selected_image_url,
                "created_at": version.created_at,
            },
        }


    def get_project_results(self, user_id: str, project_id: str) -> dict:
        """
        Generated image URLs of the project's latest version.

        Versions without stored URLs fall back to their job's results.

        Raises:
            NotFoundError: Missing project, version or results.
        """
        project = self._get_owned_project(user_id, project_id)
        latest = self._latest_version(project.id)
        if not latest:
            raise NotFoundError("No version is associated with this project yet.")

        results = [url for url in (latest.generated_image_urls or []) if isinstance(url, str)]
        if not results and latest.thumbnail_job_id:
            job = self.session.get(ThumbnailJob, latest.thumbnail_job_id)
            if job and job.fal_result_urls:
                results = [url for url in job.fal_result_urls if isinstance(url, str)]

        if not results:
            raise NotFoundError("No generated images found for this version.")

        return {
            "project": {"id": project.id, "name": project.name},
            "version": {"id": latest.id, "version_number": latest.version_number},
            "results": results,
        }


    def select_project_version(self, user_id: str, project_id: str, image_url: str) -> dict:
        """
        Choose which generated image the latest version shows.

        Raises:
            NotFoundError: Missing project or version.
            ValueError: Generation not completed, or the URL is not one of the job's results.
            ServiceError: The selection could not be written.
        """
        project = self._get_owned_project(user_id, project_id)
        if project.library_generation_status != LibraryGenerationStatus.COMPLETED:
            raise ValueError("Generation must complete before selecting a result.")

        latest = self._latest_version(project.id)
        if not latest:
            raise NotFoundError("No version exists for this project yet.")

        if project.library_generation_job_id:
            job = self.session.get(ThumbnailJob, project.library_generation_job_id)
            allowed = [url for url in (job.fal_result_urls or []) if isinstance(url, str)] if job else []
            if allowed and image_url not in allowed:
                raise ValueError("Selected URL is not part of the job output.")

        try:
            latest.selected_image_url = image_url
            self.session.add(latest)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Selecting version failed: {str(e)}")
            raise ServiceError(f"Selecting version failed: {str(e)}") from e

        return {"success": True}
