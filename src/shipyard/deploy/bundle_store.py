"""Immutable bundle storage.

Bundles are gzip-compressed tar archives stored once per release at
``<data_dir>/<service>/releases/<release_id>.tgz``. A stored bundle is
never rewritten; it is only read, extracted, or deleted.

Public API:
    BundleStore: put/extract/delete/read_entry over the data directory
"""

import io
import logging
import os
import shutil
import tarfile
import zlib
from pathlib import Path

from shipyard.core.exceptions import InvalidBundleError, StorageError

logger = logging.getLogger(__name__)

RELEASES_DIR = "releases"
BUNDLE_SUFFIX = ".tgz"

# Errors tarfile/gzip raise for truncated or non-gzip input
_ARCHIVE_ERRORS = (tarfile.TarError, EOFError, zlib.error, OSError)


class BundleStore:
    """Durable storage of release archives.

    Attributes:
        data_dir: Root data directory (one subdirectory per service).

    """

    def __init__(self, data_dir: Path) -> None:
        """Initialize bundle store.

        Args:
            data_dir: Root data directory.

        """
        self.data_dir = data_dir

    def releases_dir(self, service: str) -> Path:
        """Directory holding a service's bundles and run directories."""
        return self.data_dir / service / RELEASES_DIR

    def bundle_path(self, service: str, filename: str) -> Path:
        """Absolute path of a stored bundle."""
        return self.releases_dir(service) / filename

    def validate(self, data: bytes) -> None:
        """Check that bytes are a readable gzip tar archive.

        Raises:
            InvalidBundleError: If the archive cannot be read to the end.

        """
        if not data:
            raise InvalidBundleError("Bundle is empty")
        try:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
                tar.getmembers()
        except _ARCHIVE_ERRORS as e:
            raise InvalidBundleError(f"Bundle is not a valid tar.gz archive: {e}") from e

    def put(self, service: str, release_id: str, data: bytes) -> str:
        """Validate and durably store a bundle.

        The file is written to a temporary name, fsynced, and renamed into
        place so a crash never leaves a truncated bundle under its final name.

        Args:
            service: Owning service name.
            release_id: Release id used to name the file.
            data: Raw archive bytes.

        Returns:
            Bundle filename (the BundleRef stored in release metadata).

        Raises:
            InvalidBundleError: If data is not a tar.gz archive.
            StorageError: If the write fails.

        """
        self.validate(data)

        filename = f"{release_id}{BUNDLE_SUFFIX}"
        target = self.bundle_path(service, filename)
        temp_path = target.with_name(f".{filename}.tmp")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(f"Failed to store bundle {target}: {e}") from e

        logger.info("Stored bundle %s (%d bytes) for %s", filename, len(data), service)
        return filename

    def read_entry(self, service: str, filename: str, entry: str) -> bytes | None:
        """Read one file from a bundle without extracting the rest.

        Args:
            service: Owning service name.
            filename: Bundle filename.
            entry: Member path; ``./``-prefixed variants are also tried.

        Returns:
            File bytes, or None if the archive has no such regular file.

        Raises:
            InvalidBundleError: If the archive is unreadable.
            StorageError: If the bundle file is missing.

        """
        path = self.bundle_path(service, filename)
        if not path.exists():
            raise StorageError(f"Bundle not found: {path}")

        names = (entry, f"./{entry}") if not entry.startswith("./") else (entry, entry[2:])
        try:
            with tarfile.open(path, mode="r:gz") as tar:
                for name in names:
                    try:
                        member = tar.getmember(name)
                    except KeyError:
                        continue
                    if not member.isfile():
                        continue
                    extracted = tar.extractfile(member)
                    if extracted is None:
                        continue
                    with extracted:
                        return extracted.read()
        except _ARCHIVE_ERRORS as e:
            raise InvalidBundleError(f"Cannot read {entry} from {filename}: {e}") from e
        return None

    def extract(self, service: str, filename: str, target_dir: Path) -> None:
        """Extract a full bundle into a fresh directory.

        Args:
            service: Owning service name.
            filename: Bundle filename.
            target_dir: Directory to extract into; created if missing.

        Raises:
            InvalidBundleError: If the archive is unreadable or has unsafe members.
            StorageError: If the bundle is missing or the write fails.

        """
        path = self.bundle_path(service, filename)
        if not path.exists():
            raise StorageError(f"Bundle not found: {path}")

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create {target_dir}: {e}") from e

        try:
            with tarfile.open(path, mode="r:gz") as tar:
                # "data" filter rejects absolute paths, links outside the tree, devices
                tar.extractall(target_dir, filter="data")
        except tarfile.FilterError as e:
            raise InvalidBundleError(f"Unsafe member in {filename}: {e}") from e
        except (tarfile.TarError, EOFError, zlib.error) as e:
            raise InvalidBundleError(f"Cannot extract {filename}: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to extract {filename} to {target_dir}: {e}") from e

        logger.debug("Extracted %s into %s", filename, target_dir)

    def delete(self, service: str, filename: str) -> None:
        """Remove a stored bundle.

        Raises:
            StorageError: If the file exists but cannot be removed.

        """
        path = self.bundle_path(service, filename)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete bundle {path}: {e}") from e
        logger.info("Deleted bundle %s for %s", filename, service)

    def list_bundles(self, service: str) -> list[str]:
        """Filenames of all stored bundles for a service."""
        directory = self.releases_dir(service)
        if not directory.is_dir():
            return []
        return sorted(
            entry.name
            for entry in directory.iterdir()
            if entry.is_file() and entry.name.endswith(BUNDLE_SUFFIX)
        )

    def remove_scratch(self, service: str) -> list[str]:
        """Remove leftover temporary files and manifest scratch directories.

        Returns:
            Names of removed entries.

        """
        directory = self.releases_dir(service)
        if not directory.is_dir():
            return []

        removed: list[str] = []
        for entry in directory.iterdir():
            try:
                if entry.is_file() and entry.name.endswith(".tmp"):
                    entry.unlink()
                    removed.append(entry.name)
                elif entry.is_dir() and entry.name.startswith("tmp-"):
                    shutil.rmtree(entry)
                    removed.append(entry.name)
            except OSError:
                logger.exception("Failed to remove scratch entry %s", entry)
        return removed
