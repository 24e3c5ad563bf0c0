"""Environment helpers used at process startup."""

import logging

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env_file() -> bool:
    """Load variables from a local .env file without overwriting existing ones.

    WHAT:
        Loads variables from a local .env file into os.environ.
    WHY:
        Developers can keep DATABASE_URL and Meta credentials in .env while
        deployed processes keep their injected environment untouched.

    Returns:
        True if a .env file was found and read.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
