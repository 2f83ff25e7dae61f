"""
Collaborator interfaces consumed by the scheduling engine.

The engine never imports a concrete collaborator; ``postscheduler.tools``
provides the default implementations and tests substitute fakes.
"""

from typing import Protocol, Sequence, runtime_checkable

from postscheduler.models import Platform, ProcessedContent, PublishReceipt


@runtime_checkable
class ContentResolver(Protocol):
    """Turns a file reference into literal post text.

    Raises ``ContentResolutionError`` if the reference cannot be read.
    """

    async def resolve(self, ref: str) -> str: ...


@runtime_checkable
class ContentProcessor(Protocol):
    """Adapts literal content and images to one platform.

    Raises ``ContentValidationError`` when the content cannot be posted
    to the platform as is.
    """

    async def process(
        self,
        content: str,
        images: Sequence[str],
        platform: Platform,
    ) -> ProcessedContent: ...


@runtime_checkable
class Publisher(Protocol):
    """Publishes processed content to a platform.

    ``publish`` raises ``PlatformError`` (carrying the HTTP status and
    platform error code) or a transport error on failure.
    """

    async def publish(self, platform: Platform, processed: ProcessedContent) -> PublishReceipt: ...

    async def validate_connection(self, platform: Platform) -> bool: ...


__all__ = [
    "ContentResolver",
    "ContentProcessor",
    "Publisher",
]
