# logging_config.py
import logging
import os
from pathlib import Path

LOG_DIR = Path(os.environ.get("AHRS_LOG_DIR", "logs"))
LOG_FILE = LOG_DIR / "debug.log"


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger with the given name.
    Logs INFO to console and DEBUG to file (AHRS_LOG_DIR, default ./logs).
    """
    logger = logging.getLogger(name)

    if not logger.handlers:  # avoid duplicate handlers on reload
        logger.setLevel(logging.DEBUG)
        LOG_DIR.mkdir(parents=True, exist_ok=True)

        # --- File handler ---
        fh = logging.FileHandler(LOG_FILE)
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(
            logging.Formatter("%(asctime)s | %(name)s | %(levelname)s | %(message)s")
        )

        # --- Console handler ---
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

        logger.addHandler(fh)
        logger.addHandler(ch)

    return logger
