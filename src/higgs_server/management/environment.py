"""Environment variable management utilities.

Loads the optional .env file used by higgsd and the workers it forks.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


def load_dotenv_if_available(env_file: str | Path = ".env") -> tuple[bool, Path | None]:
    """Load .env file from current directory if it exists.

    Existing environment variables take precedence (override=False).

    Returns:
        Tuple of (success: bool, env_file_path: Path | None)
    """
    logger = logging.getLogger("env")

    env_path = Path(env_file)
    if not env_path.exists():
        logger.debug(f"No {env_path} file found")
        return False, None

    load_dotenv(env_path, override=False)
    return True, env_path.absolute()
