"""Entry-point resolution for an extracted release.

Archive tools differ in how they normalize filename case, so a manifest
declaring ``server.js`` may ship ``Server.js``. Lookup is two-phase:
exact path first, then a case-insensitive scan of the extracted tree.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from shipyard.deploy.manifest import ManifestResult

logger = logging.getLogger(__name__)

# Directories never searched during the case-insensitive scan
SKIP_DIRS = frozenset({"node_modules", ".git"})


@dataclass(frozen=True)
class EntryPoint:
    """Resolved launch target.

    Attributes:
        path: Absolute path of the entry file.
        working_dir: Directory the process runs in.
        declared: Name requested by the manifest (or the default).
        matched_case_insensitively: True if the fallback scan found it.

    """

    path: Path
    working_dir: Path
    declared: str
    matched_case_insensitively: bool = False

    @property
    def exists(self) -> bool:
        """Whether the resolved file is present."""
        return self.path.is_file()


def _normalize(relative: str) -> str:
    """Lowercased posix form without leading ``./``."""
    parts = [p for p in PurePosixPath(relative.replace("\\", "/")).parts if p not in (".", "")]
    return "/".join(parts).lower()


def find_case_insensitive(root: Path, relative: str) -> Path | None:
    """Find a file under root whose relative path matches ignoring case.

    Args:
        root: Directory to scan.
        relative: Relative path to match.

    Returns:
        Matching file path, or None.

    """
    wanted = _normalize(relative)
    if not wanted:
        return None

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in sorted(filenames):
            candidate = Path(dirpath) / filename
            rel = candidate.relative_to(root).as_posix()
            if rel.lower() == wanted:
                return candidate
    return None


def resolve_entry_point(
    working_dir: Path,
    manifest: ManifestResult,
    default_name: str = "index.js",
) -> EntryPoint:
    """Resolve the file to launch for an extracted release.

    Args:
        working_dir: Directory the bundle was extracted into.
        manifest: Manifest read from the extracted tree.
        default_name: Used when the manifest declares no ``main``.

    Returns:
        EntryPoint. When neither lookup matches, the declared path is
        returned verbatim and ``exists`` is False.

    """
    declared = manifest.main or default_name
    exact = working_dir / declared
    if exact.is_file():
        return EntryPoint(path=exact, working_dir=working_dir, declared=declared)

    found = find_case_insensitive(working_dir, declared)
    if found is not None:
        logger.info(
            "Entry point %s not found case-sensitively, using %s",
            declared,
            found.relative_to(working_dir).as_posix(),
        )
        return EntryPoint(
            path=found,
            working_dir=working_dir,
            declared=declared,
            matched_case_insensitively=True,
        )

    logger.warning("Entry point %s not found in %s", declared, working_dir)
    return EntryPoint(path=exact, working_dir=working_dir, declared=declared)
