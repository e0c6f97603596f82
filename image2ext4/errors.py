"""Error types raised by the conversion pipeline.

Every failure is fatal. Errors carry the pipeline stage and the path or
layer involved so the CLI can report where the run stopped.
"""

from typing import Optional


class Image2Ext4Error(Exception):
    exit_code = 1

    def __init__(self, message: str, stage: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.path = path

    def __str__(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        location = f"{self.path}: " if self.path else ""
        return f"{prefix}{location}{self.message}"


class ConfigError(Image2Ext4Error):
    """Missing or invalid run configuration, detected before any work starts."""

    exit_code = 2


class FormatError(Image2Ext4Error):
    """Malformed manifest or archive, or an unsafe path inside a layer."""

    exit_code = 3


class ImageIOError(Image2Ext4Error):
    exit_code = 4

    @classmethod
    def from_os_error(cls, exc: OSError, stage: Optional[str] = None) -> "ImageIOError":
        path = exc.filename if exc.filename is not None else None
        return cls(exc.strerror or str(exc), stage=stage, path=None if path is None else str(path))


class ConversionError(Image2Ext4Error):
    """The external tar → ext4 encoder failed."""

    exit_code = 5


class EngineError(ConversionError):
    exit_code = 6
