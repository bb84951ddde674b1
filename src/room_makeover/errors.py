"""
Error taxonomy for the edit pipeline.

Every failure the endpoint reports is an `EditError` carrying the HTTP status
it maps to; the API layer renders them as `{"error": message}`.
"""

from __future__ import annotations


class EditError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class MissingField(EditError):
    status_code = 400


class PayloadTooLarge(EditError):
    status_code = 413


class UnsupportedMediaType(EditError):
    status_code = 415


class UnreadableImage(EditError):
    # 413 when the probe succeeded but the pixel ceilings were exceeded.
    status_code = 415


class UpstreamConfigError(EditError):
    status_code = 500


class UpstreamRequestFailed(EditError):
    status_code = 502


class NoImageReturned(EditError):
    status_code = 502


class MalformedImagePayload(EditError):
    status_code = 502


class CompositingFailed(EditError):
    status_code = 500


class GenerationTimeout(EditError):
    status_code = 504
