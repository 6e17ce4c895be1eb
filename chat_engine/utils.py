"""Small helpers shared by the API and the CLI."""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(log_dir: Optional[str], level: int = logging.INFO) -> logging.Logger:
    """Send records to stderr and, when ``log_dir`` is given, to ``chat_engine.log`` there."""
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(getattr(handler, "_chat_engine", False) for handler in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        console._chat_engine = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        path = os.path.abspath(os.path.join(log_dir, "chat_engine.log"))
        known = {getattr(handler, "baseFilename", None) for handler in root.handlers}
        if path not in known:
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return root
