"""Quality diagnostics bundle read from the workspace's diagnostics file."""

import json
import logging
from fnmatch import fnmatch
from pathlib import Path

from coe_orchestrator.errors import CoeError

logger = logging.getLogger(__name__)

DIAGNOSTIC_KEYS = ("typeScriptErrors", "skippedTests", "underCoverageFiles")


class DiagnosticsError(CoeError):
    """Raised when the diagnostics file exists but cannot be used."""


def empty_diagnostics() -> dict:
    return {key: [] for key in DIAGNOSTIC_KEYS} | {"source": "none"}


def load_diagnostics(path: Path, file_pattern: str | None = None) -> dict:
    """Load the diagnostics bundle, optionally keeping only entries whose file matches a glob."""
    if not path.exists():
        logger.info("No diagnostics file at %s", path)
        return empty_diagnostics()

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise DiagnosticsError(f"Failed to read diagnostics from {path}: {e}") from e

    if not isinstance(data, dict):
        raise DiagnosticsError("Diagnostics file must contain a JSON object")

    bundle = {"source": str(path)}
    for key in DIAGNOSTIC_KEYS:
        entries = data.get(key, [])
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise DiagnosticsError(f"Diagnostics field {key} must be a list of objects")
        if file_pattern:
            entries = [e for e in entries if fnmatch(str(e.get("file", "")), file_pattern)]
        bundle[key] = entries

    if "timestamp" in data:
        bundle["timestamp"] = data["timestamp"]
    return bundle
