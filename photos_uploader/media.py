"""Media discovery – which files can be uploaded and how directories are expanded."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from pathlib import Path

logger = logging.getLogger(__name__)

PHOTO_EXTENSIONS = frozenset({
    "avif", "bmp", "gif", "heic", "ico", "jpg", "jpeg", "png", "tiff", "webp",
    "cr2", "cr3", "nef", "arw", "orf", "raf", "rw2", "pef", "sr2", "dng",
})
VIDEO_EXTENSIONS = frozenset({
    "3gp", "3g2", "asf", "avi", "divx", "m2t", "m2ts", "m4v", "mkv", "mmv",
    "mod", "mov", "mp4", "mpg", "mpeg", "mts", "tod", "wmv", "ts",
})
SUPPORTED_EXTENSIONS = PHOTO_EXTENSIONS | VIDEO_EXTENSIONS


def is_supported(path: str | Path) -> bool:
    return Path(path).suffix.lower().lstrip(".") in SUPPORTED_EXTENSIONS


def expand_paths(paths: Iterable[str | Path], recursive: bool = True) -> list[Path]:
    """Turn files and directories into a flat list of supported media files.

    Directories are walked fully when *recursive* is set, otherwise only their
    direct children are considered. Files are returned in the order given;
    directory contents are sorted by path.
    """
    result: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            if recursive:
                found = [
                    Path(root) / name
                    for root, _dirs, files in os.walk(path)
                    for name in files
                ]
            else:
                found = [child for child in path.iterdir() if child.is_file()]
            result.extend(sorted(p for p in found if is_supported(p)))
        elif is_supported(path):
            result.append(path)
        else:
            logger.debug("Skipping unsupported file: %s", path)
    return result
