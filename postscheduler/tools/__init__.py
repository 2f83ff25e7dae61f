"""Default collaborators: file content resolver, content processor, Meta publisher."""

from postscheduler.tools.content_processor import PlatformContentProcessor
from postscheduler.tools.file_reader import FileContentResolver
from postscheduler.tools.meta_client import MetaGraphClient

__all__ = [
    "FileContentResolver",
    "PlatformContentProcessor",
    "MetaGraphClient",
]
