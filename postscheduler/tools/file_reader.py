"""
Content resolver reading post text from the local content directory.

Only the file name of a reference is used, so a schedule cannot reach
files outside ``content_dir``.
"""

import logging
from pathlib import Path
from typing import Tuple, Union

import aiofiles
import aiofiles.os

from postscheduler.exceptions import ContentResolutionError

logger = logging.getLogger(__name__)

SUPPORTED_TEXT_FORMATS: Tuple[str, ...] = (".txt", ".md", ".json")


class FileContentResolver:
    """Reads post text files with ``aiofiles``.

    Args:
        content_dir: Directory holding the post files.
    """

    def __init__(self, content_dir: Union[str, Path] = "content/posts") -> None:
        self.content_dir = Path(content_dir)

    def path_for(self, ref: str) -> Path:
        return self.content_dir / Path(ref).name

    async def resolve(self, ref: str) -> str:
        """Return the stripped text of ``ref``.

        Raises:
            ContentResolutionError: If the file is missing, has an
                unsupported extension or cannot be read.
        """
        if not ref:
            raise ContentResolutionError("Empty content file reference")

        path = self.path_for(ref)
        if path.suffix.lower() not in SUPPORTED_TEXT_FORMATS:
            raise ContentResolutionError(f"Unsupported text format: {path.name}")
        if not await aiofiles.os.path.isfile(path):
            raise ContentResolutionError(f"Text file not found: {path.name}")

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                content = await fh.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise ContentResolutionError(f"Cannot read {path.name}: {exc}") from exc

        logger.info("Read text file: %s", path.name)
        return content.strip()

    async def probe(self) -> bool:
        """Healthy when the content directory exists."""
        return await aiofiles.os.path.isdir(self.content_dir)


__all__ = ["FileContentResolver", "SUPPORTED_TEXT_FORMATS"]
