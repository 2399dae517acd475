"""App version computation and the web app manifest.

The app version tags every cache bucket. When none is configured it is
computed from the app-shell file contents, so every deploy that changes
the shell rolls the buckets without a manual version bump.
"""

import hashlib
import json
import logging
from pathlib import Path

from .config import Config

logger = logging.getLogger(__name__)

VERSION_PREFIX = "cfd-marine-"


def _shell_file(web_root: Path, path: str) -> Path:
    relative = path.lstrip("/")
    if not relative or relative.endswith("/"):
        relative += "index.html"
    return web_root / relative


def compute_app_version(web_root: str, core_assets: tuple[str, ...]) -> str:
    """Compute the app version from the app-shell content hash.

    Missing files are hashed by name only, so the version still changes
    when one appears.
    """
    root = Path(web_root)
    digest = hashlib.sha256()
    for path in core_assets:
        digest.update(path.encode())
        file_path = _shell_file(root, path)
        try:
            digest.update(file_path.read_bytes())
        except OSError:
            logger.debug("App-shell file missing from version hash: %s", file_path)
    return VERSION_PREFIX + digest.hexdigest()[:8]


def resolve_app_version(config: Config) -> str:
    """Return the configured app version, or compute one from the web root."""
    if config.worker.app_version:
        return config.worker.app_version
    version = compute_app_version(config.api.web_root, config.worker.core_assets)
    logger.info("Computed app version %s from %s", version, config.api.web_root)
    return version


def build_manifest(version: str) -> dict:
    """Web App Manifest for installing the app on crew devices."""
    return {
        "name": "CFD Marine Team",
        "short_name": "CFD Marine",
        "description": "Marine conditions, GAR risk assessments and resources for the boat team",
        "version": version,
        "id": "/",
        "start_url": "/",
        "scope": "/",
        "display": "standalone",
        "orientation": "portrait",
        "background_color": "#121212",
        "theme_color": "#003366",
        "icons": [
            {"src": "/assets/icons/icon-180.png", "sizes": "180x180", "type": "image/png", "purpose": "any"},
            {"src": "/assets/icons/icon-192.png", "sizes": "192x192", "type": "image/png", "purpose": "any"},
            {"src": "/assets/icons/icon-512.png", "sizes": "512x512", "type": "image/png", "purpose": "maskable"},
        ],
        "shortcuts": [
            {"name": "Dashboard", "url": "/pages/dashboard.html"},
            {"name": "GAR", "url": "/pages/gar.html"},
            {"name": "Maintenance", "url": "/pages/maintenance.html"},
        ],
        "categories": ["utilities", "weather"],
    }


def manifest_json(version: str) -> str:
    return json.dumps(build_manifest(version), indent=2)
