from __future__ import annotations


class ImageProcessingError(Exception):
    """Base class for per-image failures. Never fatal to a batch."""


class DecodeError(ImageProcessingError):
    """Input bytes are not a supported or parseable image."""


class EncodeError(ImageProcessingError):
    """The target encoder refused the parameters or could not build the output."""


class BudgetUnmet(ImageProcessingError):
    """Informational notice: the byte budget could not be reached.

    The compressor attaches it to the best attempt instead of raising it.
    """

    def __init__(self, target_bytes: int, achieved_bytes: int, attempts: int) -> None:
        super().__init__(
            f"byte budget {target_bytes} not met after {attempts} attempt(s), best effort is {achieved_bytes} bytes"
        )
        self.target_bytes = target_bytes
        self.achieved_bytes = achieved_bytes
        self.attempts = attempts


class PreviewReleasedError(RuntimeError):
    """A preview handle was used or released after it had been released."""
