"""Error taxonomy and explicit stage results for the prediction pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorKind(StrEnum):
    PERMISSION_DENIED = "permission_denied"
    DECODE = "decode"
    DIMENSION_MISMATCH = "dimension_mismatch"
    MODEL_NOT_READY = "model_not_ready"
    INFERENCE = "inference"
    USER_CANCELLED = "user_cancelled"


class YorubaOcrError(Exception):
    """Base class for all pipeline errors.

    ``user_message`` is what the presentation layer shows; ``str(exc)`` keeps
    the technical detail for logs.
    """

    kind: ErrorKind
    user_message: str = "Failed to process the image."


class PermissionDeniedError(YorubaOcrError):
    kind = ErrorKind.PERMISSION_DENIED
    user_message = "permission denied"


class DecodeError(YorubaOcrError):
    """Malformed image data, or an image that could not be read."""

    kind = ErrorKind.DECODE
    user_message = "Failed to process the image."


class ResizeError(DecodeError):
    """The source image could not be opened or resized."""


class DimensionMismatchError(YorubaOcrError):
    """The normalizer received pixels that were not resized to the model input."""

    kind = ErrorKind.DIMENSION_MISMATCH
    user_message = "Failed to process the image."


class ModelNotReadyError(YorubaOcrError):
    kind = ErrorKind.MODEL_NOT_READY
    user_message = "model not loaded"


class InferenceError(YorubaOcrError):
    kind = ErrorKind.INFERENCE
    user_message = "Prediction failed."


class UserCancelledError(YorubaOcrError):
    """Not a failure: the user backed out of the picker."""

    kind = ErrorKind.USER_CANCELLED
    user_message = ""


# Programmer/integration contract violations; raised in debug mode.
CONTRACT_ERRORS: tuple[type[YorubaOcrError], ...] = (DimensionMismatchError, ModelNotReadyError)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: YorubaOcrError

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind


Result = Ok[T] | Err
