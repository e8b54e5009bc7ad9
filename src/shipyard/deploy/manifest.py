"""Package manifest parsing.

Bundles carry a ``package.json`` at the archive root. The manifest is
only used for display metadata and entry-point lookup, so parsing never
raises: callers get a ManifestResult that is either parsed or absent.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

MANIFEST_NAME = "package.json"


@dataclass(frozen=True)
class ManifestResult:
    """Outcome of reading a bundle manifest.

    Attributes:
        data: Parsed JSON object (empty when absent).
        error: Why the manifest is absent, or None when parsed.

    """

    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def parsed(self) -> bool:
        """True if the manifest was found and decoded to an object."""
        return self.error is None

    @property
    def main(self) -> str | None:
        """Declared entry point, if a non-empty string."""
        value = self.data.get("main")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @classmethod
    def absent(cls, reason: str) -> "ManifestResult":
        """Result for a missing or unusable manifest."""
        return cls(data={}, error=reason)


def parse_manifest(raw: bytes | None) -> ManifestResult:
    """Decode manifest bytes.

    Args:
        raw: File content, or None if the archive has no manifest.

    Returns:
        ManifestResult, parsed or absent.

    """
    if raw is None:
        return ManifestResult.absent("manifest not found")

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug("Manifest is not valid JSON: %s", e)
        return ManifestResult.absent(f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return ManifestResult.absent("manifest is not a JSON object")

    return ManifestResult(data=data)
