"""
Local image archive.

Photos are addressed by their public reference (``/uploads/<relative path>``)
and stored under the configured upload directory. The moderation workflow
copies confirmed photos into ``species/<slug>/`` sub-directories.
"""

import logging
import re
import shutil
import uuid
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Optional

from smartplant.core.exceptions import FileSystemError

logger = logging.getLogger(__name__)

SPECIES_PREFIX = "species"
DEFAULT_EXTENSION = ".jpg"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def species_slug(scientific_name: str) -> str:
    """Lower-cased slug with runs of non-alphanumerics collapsed to a dash."""
    slug = _NON_ALNUM.sub("-", scientific_name.lower()).strip("-")
    return slug or "unknown"


class FileArchive:
    """
    Image store rooted at ``upload_dir``.

    Usage:
        archive = FileArchive("./uploads")
        abs_path, public_ref = archive.save_upload(fileobj, "leaf.JPG")
        copied = archive.copy_into(public_ref, "species/rafflesia-arnoldii/x.jpg")
    """

    def __init__(self, upload_dir: str | Path, public_prefix: str = "/uploads"):
        self.root = Path(upload_dir).resolve()
        self.public_prefix = "/" + public_prefix.strip("/")

    def ensure_root(self) -> None:
        """Create the upload directory if it is missing."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileSystemError(f"Cannot create upload directory {self.root}: {e}") from e

    def public_url(self, rel_path: str | PurePosixPath) -> str:
        """Public reference for a path relative to the upload directory."""
        return f"{self.public_prefix}/{PurePosixPath(rel_path).as_posix().lstrip('/')}"

    def local_path(self, public_ref: str) -> Path:
        """Resolve a public reference (or a bare relative path) to a file under the root."""
        ref = public_ref.replace("\\", "/")
        if ref.startswith(self.public_prefix + "/"):
            ref = ref[len(self.public_prefix) + 1:]
        path = (self.root / ref.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise FileSystemError(
                f"Image reference escapes the upload directory: {public_ref}",
                details={"reference": public_ref},
            )
        return path

    def exists(self, public_ref: Optional[str]) -> bool:
        if not public_ref:
            return False
        return self.local_path(public_ref).is_file()

    def save_upload(self, fileobj: BinaryIO, original_filename: Optional[str]) -> tuple[Path, str]:
        """
        Store an uploaded image under a fresh unique name.

        Returns:
            (absolute path, public reference)
        """
        ext = Path(original_filename or "").suffix.lower() or DEFAULT_EXTENSION
        name = f"{uuid.uuid4()}{ext}"
        self.ensure_root()
        dest = self.root / name
        try:
            with open(dest, "wb") as out:
                shutil.copyfileobj(fileobj, out)
        except OSError as e:
            raise FileSystemError(f"Failed to store upload {original_filename!r}: {e}") from e
        return dest, self.public_url(name)

    def species_destination(self, scientific_name: str, source_ref: str) -> str:
        """Relative archive path for a new copy of ``source_ref`` filed under a species."""
        ext = PurePosixPath(source_ref).suffix.lower() or DEFAULT_EXTENSION
        return f"{SPECIES_PREFIX}/{species_slug(scientific_name)}/{uuid.uuid4()}{ext}"

    def copy_into(self, public_ref: str, destination_rel: str) -> str:
        """
        Copy a stored image to ``destination_rel``, creating parent directories.

        Returns:
            Public reference of the copy
        """
        src = self.local_path(public_ref)
        dest = self.local_path(destination_rel)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
        except OSError as e:
            raise FileSystemError(
                f"Failed to archive {public_ref} to {destination_rel}: {e}",
                details={"source": public_ref, "destination": destination_rel},
            ) from e
        logger.info(f"Archived {public_ref} -> {destination_rel}")
        return self.public_url(destination_rel)

    def remove(self, public_ref: str) -> None:
        """Delete a stored image; a missing file is not an error."""
        try:
            self.local_path(public_ref).unlink(missing_ok=True)
        except OSError as e:
            raise FileSystemError(f"Failed to remove {public_ref}: {e}") from e
