"""Wayfinder API entry point.

Run locally:
    uvicorn wayfinder.main:app --reload --port 8000
or:
    wayfinder-api
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import uvicorn

from wayfinder.api import STATE, create_app

logger = logging.getLogger("wayfinder")


def _read_env_file(env_path: Path) -> dict[str, str]:
    """Parse `KEY=value` lines; blank lines and `#` comments are ignored."""
    values: dict[str, str] = {}
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if key:
            values[key] = value.strip("'\"")
    return values


def load_env_files() -> list[Path]:
    """Apply `WAYFINDER_ENV_FILE` (or `./.env`) without overriding the real environment."""
    explicit = os.getenv("WAYFINDER_ENV_FILE", "").strip()
    candidates = [Path(explicit)] if explicit else [Path(".env")]

    loaded: list[Path] = []
    for env_path in candidates:
        if not env_path.is_file():
            continue
        for key, value in _read_env_file(env_path).items():
            os.environ.setdefault(key, value)
        loaded.append(env_path)
    return loaded


def configure_logging() -> None:
    level = os.getenv("WAYFINDER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


_env_files = load_env_files()
configure_logging()
app = create_app()
logger.info(
    "Wayfinder API ready (env files: %s, graph: %s, search radii: %s)",
    ", ".join(str(p) for p in _env_files) or "none",
    STATE.settings.graph_path or "not preloaded",
    STATE.settings.search_radii,
)


def run() -> None:
    """Serve the app with uvicorn using `API_HOST`, `API_PORT` and `API_RELOAD`."""
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "8000"))
    reload_enabled = os.getenv("API_RELOAD", "false").lower() in {"1", "true", "yes"}
    uvicorn.run("wayfinder.main:app", host=host, port=port, reload=reload_enabled)


if __name__ == "__main__":
    run()
