import os
import sys
from pathlib import Path

from loguru import logger

log_dir = Path(os.getenv("MAPINDEX_LOG_DIR", "logs"))
log_file = log_dir / "mapindex_{time}.log"

logger.remove()
logger.add(
    sys.stderr,
    level=os.getenv("MAPINDEX_LOG_LEVEL", "INFO"),
)
logger.add(
    log_file,
    rotation="256 MB",
    retention="10 days",
    compression="zip",
    encoding="utf-8",
    level="DEBUG",
    enqueue=True,
)
