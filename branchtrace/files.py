"""
File I/O helpers shared by the writers.
"""

import os
import logging
import tempfile
from typing import List

logger = logging.getLogger(__name__)


def read_lines(file_path: str) -> List[str]:
    """Read a text file into lines without line terminators."""
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read().splitlines()


def atomic_write(path: str, text: str):
    """Write ``text`` to a temp file next to ``path`` then rename it into place."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp_", suffix=os.path.basename(path))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
