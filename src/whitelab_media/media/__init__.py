"""Media import, optimization and the media library."""

from .library import MediaLibrary
from .processing import (
    MediaFetchError,
    MediaProcessingError,
    MediaProcessor,
    MediaSource,
    UnsupportedMediaError,
    UploadedFile,
    detect_source,
    source_label,
)
from .tool_runner import ToolErrorType, ToolResult, ToolRunner

__all__ = [
    "MediaLibrary",
    "MediaFetchError",
    "MediaProcessingError",
    "MediaProcessor",
    "MediaSource",
    "UnsupportedMediaError",
    "UploadedFile",
    "detect_source",
    "source_label",
    "ToolErrorType",
    "ToolResult",
    "ToolRunner",
]
