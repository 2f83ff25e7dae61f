"""
Default content processor: fits post text and images to a platform.

Text is whitespace-normalized and checked against the platform's length
limit; images are resolved against the image directory and checked for
existence, format and size. Images are passed through untouched.
"""

import logging
import re
from pathlib import Path
from typing import List, Sequence, Union

import aiofiles.os

from postscheduler.config import PLATFORM_LIMITS
from postscheduler.exceptions import ContentValidationError
from postscheduler.models import Platform, ProcessedContent

logger = logging.getLogger(__name__)

_HASHTAG_RE = re.compile(r"#[a-zA-Z0-9_]+")
_TRAILING_SPACE_RE = re.compile(r"[ \t]+\n")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def normalize_text(content: str) -> str:
    """Trim the text, strip trailing spaces on lines, collapse blank runs."""
    text = (content or "").replace("\r\n", "\n").strip()
    text = _TRAILING_SPACE_RE.sub("\n", text)
    return _BLANK_LINES_RE.sub("\n\n", text)


def count_hashtags(content: str) -> int:
    return len(_HASHTAG_RE.findall(content))


class PlatformContentProcessor:
    """Validates content against ``PLATFORM_LIMITS``.

    Args:
        image_dir: Directory relative image references are resolved in.
    """

    def __init__(self, image_dir: Union[str, Path] = "content/images") -> None:
        self.image_dir = Path(image_dir)

    async def process(
        self,
        content: str,
        images: Sequence[str],
        platform: Platform,
    ) -> ProcessedContent:
        """Adapt ``content`` and ``images`` to ``platform``.

        Raises:
            ContentValidationError: If the text is too long, an image is
                missing or unsupported, or the platform needs an image and
                none was given.
        """
        limits = PLATFORM_LIMITS[platform]
        warnings: List[str] = []

        text = normalize_text(content)
        if len(text) > limits.max_text_length:
            raise ContentValidationError(
                f"{platform.value}: Content too long ({len(text)}/{limits.max_text_length} characters)"
            )

        hashtags = count_hashtags(text)
        if hashtags > limits.max_hashtags:
            warnings.append(f"Too many hashtags ({hashtags}/{limits.max_hashtags})")

        refs = list(images)
        if len(refs) > limits.max_images:
            warnings.append(f"Only the first {limits.max_images} of {len(refs)} images are used")
            refs = refs[: limits.max_images]

        paths = [await self._check_image(ref, platform) for ref in refs]

        if limits.requires_image and not paths:
            raise ContentValidationError(f"{platform.value}: Posts require at least one image")

        return ProcessedContent(
            platform=platform,
            text=text,
            images=tuple(paths),
            warnings=tuple(warnings),
        )

    async def _check_image(self, ref: str, platform: Platform) -> str:
        limits = PLATFORM_LIMITS[platform]
        path = Path(ref)
        if not path.is_absolute():
            path = self.image_dir / path

        if not await aiofiles.os.path.isfile(path):
            raise ContentValidationError(f"{platform.value}: Image not found: {ref}")

        extension = path.suffix.lower().lstrip(".")
        if extension not in limits.image_formats:
            raise ContentValidationError(
                f'{platform.value}: Unsupported format "{extension}". '
                f"Supported: {', '.join(limits.image_formats)}"
            )

        size = (await aiofiles.os.stat(path)).st_size
        if size > limits.max_image_bytes:
            raise ContentValidationError(
                f"{platform.value}: Image too large ({size} > {limits.max_image_bytes} bytes)"
            )
        return str(path)

    async def probe(self) -> bool:
        return True


__all__ = ["PlatformContentProcessor", "normalize_text", "count_hashtags"]
