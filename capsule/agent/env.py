"""Load ``KEY=VALUE`` environment files into the process environment."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)


def load_env_file(env_path: str) -> dict[str, str]:
    """Merge variables from ``env_path`` into ``os.environ``.

    A missing or unreadable file is not an error; the loaded variables are
    returned so callers can tell what changed.
    """
    path = Path(env_path)
    if not path.is_file():
        logger.debug("No env file at %s", env_path)
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not load env file %s: %s", env_path, exc)
        return {}
    loaded = {key: value for key, value in values.items() if value is not None}
    os.environ.update(loaded)
    logger.info("Loaded %d variables from %s", len(loaded), env_path)
    return loaded
