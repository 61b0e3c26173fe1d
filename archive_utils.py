"""
ZIP archive handling for gallery and library imports.

Entries are listed, filtered and capped from the archive's central directory
first; only entries that survive the limits are decompressed.
"""
# stdlib imports
from dataclasses import dataclass, field
from io import BytesIO
import logging
import uuid
import zipfile
import zlib

# local imports
from constants import ACCEPTED_IMAGE_TYPES, MAX_IMAGES_PER_BATCH, MAX_IMAGES_PER_PROJECT
from schemas import GenerationImageInput, ProjectGroup
from utils import (
    encode_data_url,
    mime_type_for_name,
    read_image_size,
    slugify_project_name,
)


logger = logging.getLogger(__name__)

# Raised by ZipFile.read for corrupt, encrypted or oddly compressed entries
ENTRY_READ_ERRORS = (zipfile.BadZipFile, RuntimeError, NotImplementedError, zlib.error, EOFError)


@dataclass(slots=True)
class ArchiveEntry:
    """A supported image entry listed in a ZIP archive, not yet read."""
    path: str
    name: str
    mime_type: str

    @property
    def folders(self) -> list[str]:
        return [segment for segment in self.path.replace("\\", "/").split("/")[:-1] if segment]


@dataclass(slots=True)
class ArchiveImage:
    """An archive entry together with its decompressed bytes."""
    path: str
    name: str
    mime_type: str
    data: bytes


@dataclass(slots=True)
class EntryGroup:
    slug: str
    name: str
    entries: list[ArchiveEntry] = field(default_factory=list)


@dataclass(slots=True)
class GroupedArchive:
    groups: list[ProjectGroup] = field(default_factory=list)
    skipped: int = 0


def _entry_basename(entry_name: str) -> str:
    segments = [segment for segment in entry_name.replace("\\", "/").split("/") if segment]
    return segments[-1] if segments else entry_name


def build_image_input(name: str, mime_type: str, data: bytes) -> GenerationImageInput:
    """Wrap raw image bytes as an inline (data URL) generation input."""
    size = read_image_size(data)
    return GenerationImageInput(
        id=str(uuid.uuid4()),
        name=name,
        base64=encode_data_url(mime_type, data),
        mime_type=mime_type,
        size_bytes=len(data),
        width=size[0] if size else None,
        height=size[1] if size else None,
    )


def file_to_image_input(file_name: str, content_type: str | None, data: bytes) -> GenerationImageInput:
    """
    Convert a loose uploaded file into a generation input.

    Raises:
        ValueError: The file is not a PNG, JPEG or WEBP image, or Pillow cannot read it.
    """
    mime_type = content_type if content_type in ACCEPTED_IMAGE_TYPES else mime_type_for_name(file_name)
    if mime_type not in ACCEPTED_IMAGE_TYPES:
        raise ValueError(f"Unsupported file type for {file_name}.")
    if read_image_size(data) is None:
        raise ValueError(f"Unable to read image {file_name}.")
    return build_image_input(file_name, mime_type, data)


def open_archive(archive_bytes: bytes) -> zipfile.ZipFile:
    """
    Raises:
        ValueError: The payload is not a readable ZIP archive.
    """
    try:
        return zipfile.ZipFile(BytesIO(archive_bytes))
    except zipfile.BadZipFile as e:
        raise ValueError(f"Invalid ZIP archive: {e}") from e


def list_image_entries(archive: zipfile.ZipFile) -> list[ArchiveEntry]:
    """
    Supported image entries of an archive, sorted by path.

    Skips directories, macOS resource forks (__MACOSX/ and "._" files) and
    entries without a supported extension. Nothing is decompressed here.
    """
    entries = []
    for info in archive.infolist():
        if info.is_dir():
            continue
        if info.filename.lower().startswith("__macosx/"):
            continue

        name = _entry_basename(info.filename)
        if name.startswith("._"):
            continue

        mime_type = mime_type_for_name(info.filename)
        if not mime_type:
            continue

        entries.append(ArchiveEntry(path=info.filename, name=name, mime_type=mime_type))

    entries.sort(key=lambda entry: entry.path)
    return entries


def _read_entry(archive: zipfile.ZipFile, entry: ArchiveEntry) -> ArchiveImage | None:
    """
    Decompress one entry; None when Pillow cannot open the result.

    Raises:
        ValueError: The entry itself is corrupt or encrypted.
    """
    try:
        data = archive.read(entry.path)
    except ENTRY_READ_ERRORS as e:
        raise ValueError(f"Invalid ZIP archive: {e}") from e

    if read_image_size(data) is None:
        logger.warning(f"Skipping unreadable image in archive: {entry.path}")
        return None

    return ArchiveImage(path=entry.path, name=entry.name, mime_type=entry.mime_type, data=data)


def extract_archive_images(archive_bytes: bytes, limit: int | None = None) -> list[ArchiveImage]:
    """
    Read every supported image from a ZIP archive, sorted by path.

    Files Pillow cannot open are skipped.

    Raises:
        ValueError: Not a readable ZIP, a corrupt entry, or more than `limit`
            image entries (checked before anything is decompressed).
    """
    archive = open_archive(archive_bytes)
    with archive:
        entries = list_image_entries(archive)
        if limit is not None and len(entries) > limit:
            raise ValueError(f"Upload up to {limit} images at a time.")

        images = [_read_entry(archive, entry) for entry in entries]

    return [image for image in images if image is not None]


def _has_wrapping_root(entries: list[ArchiveEntry]) -> bool:
    """True when every entry sits at least two folders deep under one shared top folder."""
    if not entries or any(len(entry.folders) < 2 for entry in entries):
        return False
    return len({entry.folders[0] for entry in entries}) == 1


def _project_folder(entry: ArchiveEntry, strip_root: bool) -> str | None:
    folders = entry.folders[1:] if strip_root else entry.folders
    return folders[0] if folders else None


def group_archive_entries(
    entries: list[ArchiveEntry],
    per_project_limit: int = MAX_IMAGES_PER_PROJECT,
) -> tuple[list[EntryGroup], int]:
    """
    Bucket archive entries into projects by top-level folder.

    An archive zipped from a parent directory ("root/<project>/<image>") is
    unwrapped first. Folder names become project names and their slugs the
    grouping key, so "My Cover" and "my-cover" land in the same project.
    Entries at the archive root are ignored. Only the first `per_project_limit`
    entries of each project (in path order) are kept.

    Returns:
        (groups, skipped) where skipped counts entries over the per-project cap.
    """
    strip_root = _has_wrapping_root(entries)
    groups: dict[str, EntryGroup] = {}
    skipped = 0
    ignored_at_root = 0

    for entry in entries:
        folder = _project_folder(entry, strip_root)
        if folder is None:
            ignored_at_root += 1
            continue

        slug = slugify_project_name(folder)
        group = groups.setdefault(slug, EntryGroup(slug=slug, name=folder.strip() or slug))
        if len(group.entries) >= per_project_limit:
            skipped += 1
            continue
        group.entries.append(entry)

    if ignored_at_root:
        logger.info(f"Ignored {ignored_at_root} archive image(s) outside project folders")

    return list(groups.values()), skipped


def load_project_groups(
    archive_bytes: bytes,
    per_project_limit: int = MAX_IMAGES_PER_PROJECT,
    batch_limit: int = MAX_IMAGES_PER_BATCH,
) -> GroupedArchive:
    """
    Group a library archive into projects and read the images that are kept.

    Entries over the per-project cap and files Pillow cannot open count as
    skipped. Groups left without a readable image are dropped.

    Raises:
        ValueError: Not a readable ZIP, a corrupt entry, or more than
            `batch_limit` kept images (checked before anything is decompressed).
    """
    archive = open_archive(archive_bytes)
    with archive:
        entry_groups, skipped = group_archive_entries(list_image_entries(archive), per_project_limit)

        kept = sum(len(group.entries) for group in entry_groups)
        if kept > batch_limit:
            raise ValueError(f"Upload up to {batch_limit} images per archive.")

        grouped = GroupedArchive(skipped=skipped)
        for entry_group in entry_groups:
            inputs = []
            for entry in entry_group.entries:
                image = _read_entry(archive, entry)
                if image is None:
                    grouped.skipped += 1
                    continue
                inputs.append(build_image_input(image.name, image.mime_type, image.data))

            if inputs:
                grouped.groups.append(ProjectGroup(slug=entry_group.slug, name=entry_group.name, inputs=inputs))

    return grouped
