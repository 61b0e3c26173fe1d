"""Integration tests for the cover library endpoints.

- ``POST /api/library/batch-upload`` — ZIP import into projects.
- ``POST /api/library/batch-upload/manifest`` — import of pre-uploaded images.
- ``GET /api/library/projects`` — project listing.
- ``POST /api/library/generate-selection`` — library generation.
- ``POST /api/library/save`` — saving a job as a version.
- ``GET /api/library/projects/{id}/results`` — latest results.
- ``POST /api/library/projects/{id}/select-version`` — picking a result.
"""

from __future__ import annotations

import pytest
from PIL import Image
from sqlmodel import select

from models import (
    CoverProject,
    CoverVersion,
    GalleryImage,
    JobStatus,
    LibraryGenerationStatus,
    ThumbnailJob,
)


CDN = "https://res.cloudinary.com/demo/image/upload"


def _upload_zip(test_client, headers, archive: bytes, name: str = "projects.zip", content_type: str = "application/zip"):
    return test_client.post(
        "/api/library/batch-upload",
        files={"file": (name, archive, content_type)},
        headers=headers,
    )


@pytest.fixture
def project_archive(image_bytes, zip_bytes) -> bytes:
    """Two project folders: Alpha with four images (one over the cap), Beta with one."""
    return zip_bytes({
        "Alpha/1.png": image_bytes(64, 48, color=(10, 0, 0)),
        "Alpha/2.png": image_bytes(64, 48, color=(20, 0, 0)),
        "Alpha/3.png": image_bytes(64, 48, color=(30, 0, 0)),
        "Alpha/4.png": image_bytes(64, 48, color=(40, 0, 0)),
        "Beta Launch/cover.jpg": image_bytes(90, 160, "JPEG", color=(0, 50, 0)),
        "stray.png": image_bytes(color=(0, 0, 60)),
        "Alpha/notes.txt": b"ignore me",
        "__MACOSX/Alpha/._1.png": b"fork",
    })


@pytest.fixture
def imported_projects(test_client, auth_headers, fake_cloudinary, project_archive, db_session) -> dict[str, CoverProject]:
    resp = _upload_zip(test_client, auth_headers, project_archive)
    assert resp.status_code == 200
    return {project.slug: project for project in db_session.exec(select(CoverProject)).all()}


# ---------------------------------------------------------------------------
# ZIP batch import.
# ---------------------------------------------------------------------------


class TestBatchUpload:
    """Test POST /api/library/batch-upload."""

    def test_import_stats(self, test_client, auth_headers, fake_cloudinary, project_archive):
        resp = _upload_zip(test_client, auth_headers, project_archive)
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "stats": {"projects": 2, "projects_created": 2, "assets": 4, "skipped": 1},
        }

    def test_projects_and_versions(self, imported_projects, db_session):
        alpha = imported_projects["alpha"]
        assert alpha.name == "Alpha"
        assert alpha.latest_version_number == 1
        assert alpha.library_selected is True
        assert alpha.library_generation_status == LibraryGenerationStatus.WAITING

        version = db_session.exec(select(CoverVersion).where(CoverVersion.project_id == alpha.id)).one()
        assert version.version_number == 1
        assert version.label == "alpha_v1"
        assert version.selected_image_url == ""
        assert version.thumbnail_job_id is None
        assert all(url.startswith(CDN) for url in (
            version.source_image_1_url,
            version.source_image_2_url,
            version.source_image_3_url,
        ))

        beta = imported_projects["beta_launch"]
        beta_version = db_session.exec(select(CoverVersion).where(CoverVersion.project_id == beta.id)).one()
        assert beta_version.source_image_1_url.startswith(CDN)
        assert beta_version.source_image_2_url is None
        assert beta_version.source_image_3_url is None

    def test_source_assets_in_gallery(self, imported_projects, db_session):
        alpha = imported_projects["alpha"]
        assets = db_session.exec(select(GalleryImage).where(GalleryImage.project_id == alpha.id)).all()
        assert len(assets) == 3
        assert all(asset.is_source_asset for asset in assets)
        assert all(asset.project_slug == "alpha" for asset in assets)
        assert {asset.image_metadata["name"] for asset in assets} == {"1.png", "2.png", "3.png"}

    def test_reimport_bumps_versions(self, test_client, auth_headers, fake_cloudinary, project_archive, db_session):
        _upload_zip(test_client, auth_headers, project_archive)
        resp = _upload_zip(test_client, auth_headers, project_archive)
        assert resp.json()["stats"]["projects_created"] == 0

        alpha = db_session.exec(select(CoverProject).where(CoverProject.slug == "alpha")).one()
        assert alpha.latest_version_number == 2
        numbers = sorted(
            version.version_number
            for version in db_session.exec(select(CoverVersion).where(CoverVersion.project_id == alpha.id)).all()
        )
        assert numbers == [1, 2]

        # Same bytes, same checksums: the gallery does not grow.
        assert len(db_session.exec(select(GalleryImage)).all()) == 4

    def test_reimport_resets_generation_state(self, test_client, auth_headers, fake_cloudinary, project_archive, imported_projects, db_session):
        alpha = imported_projects["alpha"]
        alpha.library_generation_status = LibraryGenerationStatus.COMPLETED
        alpha.library_generation_job_id = "old-job"
        db_session.add(alpha)
        db_session.commit()

        _upload_zip(test_client, auth_headers, project_archive)

        db_session.refresh(alpha)
        assert alpha.library_generation_status == LibraryGenerationStatus.WAITING
        assert alpha.library_generation_job_id is None

    def test_rejects_non_zip(self, test_client, auth_headers, fake_cloudinary, image_bytes):
        resp = _upload_zip(test_client, auth_headers, image_bytes(), name="cover.png", content_type="image/png")
        assert resp.status_code == 400

    def test_corrupt_entry_is_a_bad_request(self, test_client, auth_headers, fake_cloudinary, image_bytes, zip_bytes, db_session):
        payload = image_bytes()
        archive = zip_bytes({"Alpha/1.png": payload})
        offset = archive.index(payload) + 20
        archive = archive[:offset] + bytes([archive[offset] ^ 0xFF]) + archive[offset + 1:]

        resp = _upload_zip(test_client, auth_headers, archive)
        assert resp.status_code == 400
        assert "Invalid ZIP archive" in resp.json()["detail"]
        assert db_session.exec(select(CoverProject)).all() == []

    def test_oversized_images_are_skipped(self, test_client, auth_headers, fake_cloudinary, image_bytes, zip_bytes, monkeypatch):
        archive = zip_bytes({
            "Alpha/huge.png": image_bytes(64, 48),
            "Alpha/small.png": image_bytes(10, 10),
        })
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

        resp = _upload_zip(test_client, auth_headers, archive)
        assert resp.status_code == 200
        assert resp.json()["stats"] == {"projects": 1, "projects_created": 1, "assets": 1, "skipped": 1}

    def test_rejects_corrupt_zip(self, test_client, auth_headers, fake_cloudinary):
        resp = _upload_zip(test_client, auth_headers, b"PK but not really")
        assert resp.status_code == 400
        assert "Invalid ZIP archive" in resp.json()["detail"]

    def test_root_only_archive_has_no_images(self, test_client, auth_headers, fake_cloudinary, image_bytes, zip_bytes):
        resp = _upload_zip(test_client, auth_headers, zip_bytes({"cover.png": image_bytes()}))
        assert resp.status_code == 400
        assert "No supported images" in resp.json()["detail"]

    def test_too_many_images(self, test_client, auth_headers, fake_cloudinary, image_bytes, zip_bytes, db_session):
        entries = {
            f"project-{folder:02d}/{n}.png": image_bytes(4, 4, color=(folder, n, 0))
            for folder in range(21)
            for n in range(3)
        }
        resp = _upload_zip(test_client, auth_headers, zip_bytes(entries))
        assert resp.status_code == 400
        assert db_session.exec(select(CoverProject)).all() == []

    def test_failure_keeps_earlier_projects(self, test_client, auth_headers, fake_cloudinary, project_archive, monkeypatch, db_session):
        import services

        real_upload = fake_cloudinary.ensure_images_have_urls
        calls = {"count": 0}

        async def flaky_upload(images, user_id, settings, job_id=None):
            calls["count"] += 1
            if calls["count"] == 2:
                raise RuntimeError("cloudinary is down")
            return await real_upload(images, user_id, settings, job_id)

        monkeypatch.setattr(services, "ensure_images_have_urls", flaky_upload)

        resp = _upload_zip(test_client, auth_headers, project_archive)
        assert resp.status_code == 500
        assert "cloudinary is down" in resp.json()["detail"]

        slugs = [project.slug for project in db_session.exec(select(CoverProject)).all()]
        assert slugs == ["alpha"]


# ---------------------------------------------------------------------------
# Manifest import.
# ---------------------------------------------------------------------------


class TestBatchUploadManifest:
    """Test POST /api/library/batch-upload/manifest."""

    @staticmethod
    def _input(name: str, **overrides) -> dict:
        image = {
            "id": name,
            "name": f"{name}.png",
            "upload_url": f"{CDN}/direct/{name}.png",
            "mime_type": "image/png",
            "size_bytes": 1000,
            "width": 800,
            "height": 600,
        }
        image.update(overrides)
        return image

    def test_imports_pre_uploaded_images(self, test_client, auth_headers, fake_cloudinary, db_session):
        payload = {
            "projects": [
                {"slug": "gamma", "name": "Gamma", "inputs": [self._input(f"g{n}") for n in range(4)]},
            ],
        }
        resp = test_client.post("/api/library/batch-upload/manifest", json=payload, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["stats"] == {"projects": 1, "projects_created": 1, "assets": 3, "skipped": 1}
        assert fake_cloudinary.input_uploads == 0

        version = db_session.exec(select(CoverVersion)).one()
        assert version.source_image_1_url == f"{CDN}/direct/g0.png"

    def test_inputs_need_upload_urls(self, test_client, auth_headers, fake_cloudinary, data_url_image):
        inline = data_url_image("inline")
        payload = {"projects": [{"slug": "gamma", "name": "Gamma", "inputs": [inline]}]}
        resp = test_client.post("/api/library/batch-upload/manifest", json=payload, headers=auth_headers)
        assert resp.status_code == 400
        assert "missing upload_url" in resp.json()["detail"]

    def test_empty_manifest(self, test_client, auth_headers, fake_cloudinary):
        resp = test_client.post(
            "/api/library/batch-upload/manifest",
            json={"projects": [{"slug": "gamma", "name": "Gamma", "inputs": []}]},
            headers=auth_headers,
        )
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Project listing.
# ---------------------------------------------------------------------------


class TestListProjects:
    def test_projects_with_latest_version(self, test_client, auth_headers, imported_projects):
        resp = test_client.get("/api/library/projects", headers=auth_headers)
        assert resp.status_code == 200
        projects = {project["slug"]: project for project in resp.json()["projects"]}
        assert set(projects) == {"alpha", "beta_launch"}
        assert projects["alpha"]["latest_version"]["version_number"] == 1
        assert projects["alpha"]["library_generation_status"] == "WAITING"

    def test_projects_are_per_user(self, test_client, other_user, imported_projects):
        resp = test_client.get("/api/library/projects", headers={"X-User-Id": other_user.id})
        assert resp.json() == {"projects": []}


# ---------------------------------------------------------------------------
# Library generation.
# ---------------------------------------------------------------------------


class TestGenerateSelection:
    """Test POST /api/library/generate-selection."""

    def test_generates_new_versions(self, test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects, db_session):
        alpha = imported_projects["alpha"]
        resp = test_client.post(
            "/api/library/generate-selection",
            json={"project_ids": [alpha.id]},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "summary": {"processed": 1, "completed": 1, "failed": 0},
            "errors": [],
        }

        db_session.refresh(alpha)
        assert alpha.library_generation_status == LibraryGenerationStatus.COMPLETED
        assert alpha.latest_version_number == 2
        assert alpha.library_generation_completed_at is not None

        version = db_session.exec(
            select(CoverVersion).where(CoverVersion.project_id == alpha.id, CoverVersion.version_number == 2)
        ).one()
        assert version.label == "alpha_v2"
        assert version.thumbnail_job_id == alpha.library_generation_job_id
        assert version.selected_image_url == version.generated_image_urls[0]
        assert len(version.generated_image_urls) == 2

        job = db_session.get(ThumbnailJob, alpha.library_generation_job_id)
        assert job.status == JobStatus.SUCCESS
        assert job.project_slug == "alpha"
        # 64x48 source images give a custom 4:3 ratio
        assert job.aspect_ratio_id == "custom"
        assert job.aspect_ratio_string == "4:3"
        assert fake_fal.calls[0]["aspect_ratio"] == "4:3"

    def test_single_source_is_padded(self, test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects):
        beta = imported_projects["beta_launch"]
        test_client.post("/api/library/generate-selection", json={"project_ids": [beta.id]}, headers=auth_headers)

        workflow_input = fake_fal.calls[0]
        assert workflow_input["image_url_1"] == workflow_input["image_url_2"] == workflow_input["image_url_3"]
        assert workflow_input["aspect_ratio"] == "9:16"

    def test_failure_is_collected(self, test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects, db_session):
        fake_fal.error = RuntimeError("gpu on fire")
        ids = [project.id for project in imported_projects.values()]

        resp = test_client.post("/api/library/generate-selection", json={"project_ids": ids}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["summary"] == {"processed": 2, "completed": 0, "failed": 2}
        assert {error["project_id"] for error in data["errors"]} == set(ids)
        assert all("gpu on fire" in error["message"] for error in data["errors"])

        for project in imported_projects.values():
            db_session.refresh(project)
            assert project.library_generation_status == LibraryGenerationStatus.FAILED
            assert project.latest_version_number == 1
            job = db_session.get(ThumbnailJob, project.library_generation_job_id)
            assert job.status == JobStatus.FAILED

    def test_failed_projects_can_be_retried(self, test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects, db_session):
        alpha = imported_projects["alpha"]
        fake_fal.error = RuntimeError("transient")
        test_client.post("/api/library/generate-selection", json={"project_ids": [alpha.id]}, headers=auth_headers)

        fake_fal.error = None
        resp = test_client.post("/api/library/generate-selection", json={"project_ids": [alpha.id]}, headers=auth_headers)
        assert resp.json()["summary"]["completed"] == 1

    def test_completed_projects_are_not_eligible(self, test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects):
        alpha = imported_projects["alpha"]
        test_client.post("/api/library/generate-selection", json={"project_ids": [alpha.id]}, headers=auth_headers)

        resp = test_client.post("/api/library/generate-selection", json={"project_ids": [alpha.id]}, headers=auth_headers)
        assert resp.status_code == 400

    def test_other_users_projects_are_not_eligible(self, test_client, other_user, fake_fal, fake_cloudinary, imported_projects):
        ids = [project.id for project in imported_projects.values()]
        resp = test_client.post(
            "/api/library/generate-selection",
            json={"project_ids": ids},
            headers={"X-User-Id": other_user.id},
        )
        assert resp.status_code == 400

    def test_empty_selection(self, test_client, auth_headers):
        resp = test_client.post("/api/library/generate-selection", json={"project_ids": []}, headers=auth_headers)
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Saving versions.
# ---------------------------------------------------------------------------


class TestSaveCoverVersion:
    """Test POST /api/library/save."""

    @pytest.fixture
    def job_id(self, test_client, auth_headers, fake_fal, fake_cloudinary, data_url_image) -> str:
        resp = test_client.post(
            "/api/generate",
            json={"project_name": "Winter Drop", "aspect_ratio_id": "4_3", "images": [data_url_image("a")]},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        return resp.json()["job"]["id"]

    def test_first_save_creates_project(self, test_client, auth_headers, job_id, db_session):
        resp = test_client.post("/api/library/save", json={"job_id": job_id}, headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()

        assert data["project"]["slug"] == "winter_drop"
        assert data["project"]["latest_version_number"] == 1
        assert data["version"]["label"] == "winter_drop_v1"

        job = db_session.get(ThumbnailJob, job_id)
        assert data["version"]["selected_image_url"] == job.fal_result_url

    def test_next_save_appends_version(self, test_client, auth_headers, job_id, db_session):
        test_client.post("/api/library/save", json={"job_id": job_id}, headers=auth_headers)
        job = db_session.get(ThumbnailJob, job_id)
        chosen = job.fal_result_urls[1]

        resp = test_client.post(
            "/api/library/save",
            json={"job_id": job_id, "selected_image_url": chosen},
            headers=auth_headers,
        )
        data = resp.json()
        assert data["project"]["latest_version_number"] == 2
        assert data["version"]["version_number"] == 2
        assert data["version"]["selected_image_url"] == chosen

        version = db_session.get(CoverVersion, data["version"]["id"])
        assert version.generated_image_urls == job.fal_result_urls

    def test_unknown_job(self, test_client, auth_headers):
        resp = test_client.post("/api/library/save", json={"job_id": "missing"}, headers=auth_headers)
        assert resp.status_code == 404

    def test_other_users_job(self, test_client, other_user, job_id):
        resp = test_client.post("/api/library/save", json={"job_id": job_id}, headers={"X-User-Id": other_user.id})
        assert resp.status_code == 404

    def test_database_failure_is_a_server_error(self, test_client, auth_headers, job_id, fail_sql, db_session):
        fail_sql("INSERT INTO coverversion")

        resp = test_client.post("/api/library/save", json={"job_id": job_id}, headers=auth_headers)
        assert resp.status_code == 500
        assert "disk I/O error" in resp.json()["detail"]
        assert db_session.exec(select(CoverProject)).all() == []

    def test_failed_job_is_not_ready(self, test_client, auth_headers, job_id, db_session):
        job = db_session.get(ThumbnailJob, job_id)
        job.status = JobStatus.FAILED
        db_session.add(job)
        db_session.commit()

        resp = test_client.post("/api/library/save", json={"job_id": job_id}, headers=auth_headers)
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Results and selection.
# ---------------------------------------------------------------------------


@pytest.fixture
def generated_alpha(test_client, auth_headers, fake_fal, fake_cloudinary, imported_projects) -> CoverProject:
    alpha = imported_projects["alpha"]
    resp = test_client.post("/api/library/generate-selection", json={"project_ids": [alpha.id]}, headers=auth_headers)
    assert resp.json()["summary"]["completed"] == 1
    return alpha


class TestProjectResults:
    """Test GET /api/library/projects/{id}/results."""

    def test_returns_latest_results(self, test_client, auth_headers, generated_alpha):
        resp = test_client.get(f"/api/library/projects/{generated_alpha.id}/results", headers=auth_headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["project"]["name"] == "Alpha"
        assert data["version"]["version_number"] == 2
        assert len(data["results"]) == 2

    def test_falls_back_to_job_results(self, test_client, auth_headers, generated_alpha, db_session):
        version = db_session.exec(
            select(CoverVersion).where(CoverVersion.project_id == generated_alpha.id, CoverVersion.version_number == 2)
        ).one()
        version.generated_image_urls = None
        db_session.add(version)
        db_session.commit()

        resp = test_client.get(f"/api/library/projects/{generated_alpha.id}/results", headers=auth_headers)
        assert resp.status_code == 200
        assert len(resp.json()["results"]) == 2

    def test_imported_project_has_no_results(self, test_client, auth_headers, imported_projects):
        project_id = imported_projects["alpha"].id
        resp = test_client.get(f"/api/library/projects/{project_id}/results", headers=auth_headers)
        assert resp.status_code == 404

    def test_unknown_project(self, test_client, auth_headers):
        resp = test_client.get("/api/library/projects/missing/results", headers=auth_headers)
        assert resp.status_code == 404


class TestSelectVersion:
    """Test POST /api/library/projects/{id}/select-version."""

    def test_select_a_generated_image(self, test_client, auth_headers, generated_alpha, db_session):
        results = test_client.get(f"/api/library/projects/{generated_alpha.id}/results", headers=auth_headers).json()["results"]

        resp = test_client.post(
            f"/api/library/projects/{generated_alpha.id}/select-version",
            json={"image_url": results[1]},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

        version = db_session.exec(
            select(CoverVersion).where(CoverVersion.project_id == generated_alpha.id, CoverVersion.version_number == 2)
        ).one()
        assert version.selected_image_url == results[1]

    def test_foreign_url_is_rejected(self, test_client, auth_headers, generated_alpha):
        resp = test_client.post(
            f"/api/library/projects/{generated_alpha.id}/select-version",
            json={"image_url": "https://example.com/not-ours.png"},
            headers=auth_headers,
        )
        assert resp.status_code == 400

    def test_project_must_be_completed(self, test_client, auth_headers, imported_projects):
        project_id = imported_projects["alpha"].id
        resp = test_client.post(
            f"/api/library/projects/{project_id}/select-version",
            json={"image_url": f"{CDN}/x.png"},
            headers=auth_headers,
        )
        assert resp.status_code == 400

    def test_database_failure_is_a_server_error(self, test_client, auth_headers, generated_alpha, fail_sql):
        results = test_client.get(f"/api/library/projects/{generated_alpha.id}/results", headers=auth_headers).json()["results"]
        fail_sql("UPDATE coverversion")

        resp = test_client.post(
            f"/api/library/projects/{generated_alpha.id}/select-version",
            json={"image_url": results[1]},
            headers=auth_headers,
        )
        assert resp.status_code == 500
        assert "disk I/O error" in resp.json()["detail"]

    def test_invalid_url(self, test_client, auth_headers, generated_alpha):
        resp = test_client.post(
            f"/api/library/projects/{generated_alpha.id}/select-version",
            json={"image_url": "not a url"},
            headers=auth_headers,
        )
        assert resp.status_code == 422
