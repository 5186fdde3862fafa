from __future__ import annotations


class VidPulseError(Exception):
    """Base class for errors raised by the analysis pipeline."""

    status_code = 500

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(VidPulseError):
    """Submission payload has the wrong shape."""

    status_code = 400


class NotFoundError(VidPulseError):
    """Unknown channel, empty channel, or unknown job id."""

    status_code = 404


class TransientExternalError(VidPulseError):
    """Broker or upstream API unavailable while admitting a submission."""

    status_code = 500


class ItemProcessingError(VidPulseError):
    """A single item could not be fetched or analyzed."""

    def __init__(self, message: str, *, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class MessageDecodeError(VidPulseError):
    """A queue payload could not be parsed into a known message."""
