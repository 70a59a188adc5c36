import logging
import os
import sys
from pathlib import Path

from shared.constants import LOG_FILE_NAME, LOG_FORMAT


def default_log_dir() -> Path:
    local_base = Path(os.getenv('LOCALAPPDATA') or Path.home() / '.local' / 'state') / 'VoxelMapper'
    return local_base / 'log'


def setup_logging(log_dir: str | Path | None = None, level: int = logging.INFO) -> Path:
    """Configure application logging to stdout and a log file.

    Returns:
        Path of the log file.
    """
    folder = Path(log_dir) if log_dir is not None else default_log_dir()
    folder.mkdir(parents=True, exist_ok=True)
    log_file = folder / LOG_FILE_NAME

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(str(log_file), encoding='utf-8'),
        ],
        force=True,
    )
    return log_file
