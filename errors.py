"""Client-visible failures raised by the streaming engine."""

from __future__ import annotations


class StreamingError(Exception):
    """Base class; subclasses carry the HTTP status they map to."""

    status_code = 500

    def __init__(self, detail: str = "", headers: dict[str, str] | None = None):
        super().__init__(detail)
        self.detail = detail
        self.headers = headers or {}


class ProbeError(StreamingError):
    """File is unreadable or not a recognized container."""

    status_code = 422


class RangeUnsatisfiable(StreamingError):
    status_code = 416

    def __init__(self, file_size: int, detail: str = "Requested range not satisfiable"):
        super().__init__(detail, headers={"Content-Range": f"bytes */{file_size}"})
        self.file_size = file_size


class TranscodeLaunchError(StreamingError):
    """ffmpeg could not be started, or exited before writing a manifest."""

    status_code = 500


class TranscodeStartTimeout(StreamingError):
    status_code = 504


class ArtifactNotFound(StreamingError):
    status_code = 404


class PathTraversalRejected(StreamingError):
    status_code = 403


class MediaNotFound(StreamingError):
    status_code = 404


class InvalidTrackSelection(StreamingError):
    status_code = 400
