"""Single-flight prediction orchestrator.

Drives one prediction cycle at a time through

    idle -> selecting -> preprocessing -> inferring -> resolved -> idle

Every user action bumps a generation counter. A cycle captures the generation
it started with and may only write state while that generation is still the
latest one, so a slow cycle that is overtaken by a newer selection is dropped
when it finally returns instead of overwriting the newer result.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from yorubaocr.errors import (
    CONTRACT_ERRORS,
    DecodeError,
    Err,
    ErrorKind,
    InferenceError,
    ModelNotReadyError,
    Ok,
    PermissionDeniedError,
    UserCancelledError,
    YorubaOcrError,
)
from yorubaocr.ml.model_manager import ModelState

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from yorubaocr.errors import Result
    from yorubaocr.ml.inference import InferencePool
    from yorubaocr.ml.model_manager import ModelRunner
    from yorubaocr.ml.preprocessing import ImagePreprocessor, SourceImage

logger = logging.getLogger(__name__)

NO_PREDICTION = "No prediction result"

_UNSET: Any = object()


class OrchestratorState(StrEnum):
    IDLE = "idle"
    SELECTING = "selecting"
    PREPROCESSING = "preprocessing"
    INFERRING = "inferring"
    RESOLVED = "resolved"


class PickerKind(StrEnum):
    LIBRARY = "library"
    CAMERA = "camera"


class ImagePicker(Protocol):
    """Presentation-side capability that asks for permission and picks an image."""

    async def request_permission(self, kind: PickerKind) -> bool:
        """Return whether access to the library or camera was granted."""
        ...

    async def pick(self, kind: PickerKind) -> SourceImage | None:
        """Return the picked image, or None if the user cancelled."""
        ...


@dataclass(frozen=True)
class PredictionResult:
    """Outcome of one cycle: either a display string or a user-facing error."""

    prediction: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, prediction: str) -> PredictionResult:
        return cls(prediction=prediction)

    @classmethod
    def failure(cls, exc: YorubaOcrError) -> PredictionResult:
        return cls(error=exc.user_message, error_kind=exc.kind, detail=str(exc) or None)


@dataclass(frozen=True)
class Snapshot:
    """Observable ``{state, source image, result}`` tuple rendered by the UI."""

    state: OrchestratorState = OrchestratorState.IDLE
    source_image: SourceImage | None = None
    result: PredictionResult | None = None

    @property
    def source_image_ref(self) -> str | None:
        return self.source_image.uri if self.source_image is not None else None


def format_prediction(outputs: Any) -> str:
    """Map raw model outputs to the display string.

    Only the first output is shown. Strings and scalars are shown as is;
    arrays are flattened and their values joined with commas. No argmax or
    label lookup is applied.

    Raises:
        InferenceError: If ``outputs`` is not an ordered sequence.
    """
    if isinstance(outputs, (str, bytes)) or not isinstance(outputs, (Sequence, np.ndarray)):
        raise InferenceError(f"Model returned malformed output of type {type(outputs).__name__}")
    if len(outputs) == 0:
        return NO_PREDICTION

    first = outputs[0]
    if isinstance(first, np.ndarray):
        if first.size == 0:
            return NO_PREDICTION
        text = ",".join(str(value) for value in first.ravel().tolist())
    elif isinstance(first, bytes):
        text = first.decode("utf-8", errors="replace")
    else:
        text = str(first)
    return f"Prediction: {text}"


class PredictionOrchestrator:
    """State machine coordinating selection, preprocessing and inference."""

    def __init__(
        self,
        model: ModelRunner,
        preprocessor: ImagePreprocessor,
        pool: InferencePool,
        picker: ImagePicker | None = None,
        *,
        debug: bool = False,
    ) -> None:
        self._model = model
        self._preprocessor = preprocessor
        self._pool = pool
        self._picker = picker
        self._debug = debug

        self._generation = 0
        self._snapshot = Snapshot()
        self._listeners: list[Callable[[Snapshot], None]] = []

    # -- Observable state ---------------------------------------------------

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def state(self) -> OrchestratorState:
        return self._snapshot.state

    @property
    def generation(self) -> int:
        """Generation of the most recent user action."""
        return self._generation

    def subscribe(self, listener: Callable[[Snapshot], None]) -> Callable[[], None]:
        """Register a listener for snapshot changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- UI contract --------------------------------------------------------

    async def select_image(self, picker: ImagePicker | None = None) -> Snapshot:
        """Pick an image from the library and predict on it."""
        return await self._acquire_and_predict(PickerKind.LIBRARY, picker)

    async def capture_photo(self, picker: ImagePicker | None = None) -> Snapshot:
        """Capture a photo with the camera and predict on it."""
        return await self._acquire_and_predict(PickerKind.CAMERA, picker)

    async def retry_predict(self) -> Snapshot:
        """Re-run prediction on the current source image without reselecting."""
        source = self._snapshot.source_image
        if source is None:
            logger.info("Retry requested with no source image; ignoring")
            return self._snapshot
        generation = self._next_generation()
        self._apply(generation, OrchestratorState.PREPROCESSING, source_image=source, result=None)
        await self._predict(source, generation)
        return self._snapshot

    def clear(self) -> Snapshot:
        """Discard the source image and result; any in-flight cycle becomes stale."""
        generation = self._next_generation()
        self._apply(generation, OrchestratorState.IDLE, source_image=None, result=None)
        return self._snapshot

    # -- Cycle --------------------------------------------------------------

    async def _acquire_and_predict(self, kind: PickerKind, picker: ImagePicker | None) -> Snapshot:
        picker = picker or self._picker
        if picker is None:
            raise RuntimeError("No image picker configured")

        generation = self._next_generation()
        self._apply(generation, OrchestratorState.SELECTING)

        granted = await self._permission_stage(picker, kind)
        if isinstance(granted, Err):
            self._apply(
                generation,
                OrchestratorState.RESOLVED,
                source_image=None,
                result=PredictionResult.failure(granted.error),
            )
            return self._snapshot

        picked = await self._pick_stage(picker, kind)
        if isinstance(picked, Err):
            if picked.kind == ErrorKind.USER_CANCELLED:
                # Cancelling is not an error: back to a clean idle.
                self._apply(generation, OrchestratorState.IDLE, source_image=None, result=None)
            else:
                self._apply(
                    generation,
                    OrchestratorState.RESOLVED,
                    source_image=None,
                    result=PredictionResult.failure(picked.error),
                )
            return self._snapshot

        source = picked.value
        if not self._apply(generation, OrchestratorState.PREPROCESSING, source_image=source, result=None):
            return self._snapshot
        await self._predict(source, generation)
        return self._snapshot

    async def _predict(self, source: SourceImage, generation: int) -> None:
        if self._model.state != ModelState.LOADED:
            self._resolve_model_not_ready(generation)
            return

        tensor = await self._preprocess_stage(source)
        if isinstance(tensor, Err):
            self._fail(generation, tensor)
            return

        if self._model.state != ModelState.LOADED:
            self._resolve_model_not_ready(generation)
            return
        if not self._apply(generation, OrchestratorState.INFERRING):
            return

        prediction = await self._inference_stage(tensor.value)
        if isinstance(prediction, Err):
            self._fail(generation, prediction)
            return
        self._apply(generation, OrchestratorState.RESOLVED, result=PredictionResult.success(prediction.value))

    # -- Stages -------------------------------------------------------------

    async def _permission_stage(self, picker: ImagePicker, kind: PickerKind) -> Result[None]:
        try:
            granted = await picker.request_permission(kind)
        except PermissionDeniedError as exc:
            return Err(exc)
        except Exception as exc:
            logger.exception("Permission request for %s failed", kind)
            return Err(DecodeError(f"Could not request {kind} permission: {exc}"))
        if not granted:
            return Err(PermissionDeniedError(f"{kind} permission is required"))
        return Ok(None)

    async def _pick_stage(self, picker: ImagePicker, kind: PickerKind) -> Result[SourceImage]:
        try:
            source = await picker.pick(kind)
        except UserCancelledError as exc:
            return Err(exc)
        except Exception as exc:
            logger.exception("Picking from %s failed", kind)
            return Err(DecodeError(f"Could not read image from {kind}: {exc}"))
        if source is None:
            return Err(UserCancelledError(f"{kind} selection cancelled"))
        return Ok(source)

    async def _preprocess_stage(self, source: SourceImage) -> Result[NDArray[np.float32]]:
        try:
            tensor = await self._pool.run(self._preprocessor.preprocess, source)
        except YorubaOcrError as exc:
            return Err(exc)
        except Exception as exc:
            logger.exception("Unexpected failure preprocessing %s", source.uri)
            return Err(DecodeError(f"Unexpected preprocessing failure: {exc}"))
        return Ok(tensor)

    async def _inference_stage(self, tensor: NDArray[np.float32]) -> Result[str]:
        try:
            outputs = await self._model.run(tensor)
            return Ok(format_prediction(outputs))
        except YorubaOcrError as exc:
            return Err(exc)
        except Exception as exc:
            logger.exception("Unexpected failure from model runner")
            return Err(InferenceError(f"Model runner failed: {exc}"))

    # -- State bookkeeping --------------------------------------------------

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _resolve_model_not_ready(self, generation: int) -> None:
        logger.warning("Prediction requested while model is %s", self._model.state)
        self._apply(
            generation,
            OrchestratorState.RESOLVED,
            result=PredictionResult.failure(ModelNotReadyError(f"model state is {self._model.state}")),
        )

    def _fail(self, generation: int, err: Err) -> None:
        if generation != self._generation:
            logger.debug("Discarding stale %s failure from generation %d", err.kind, generation)
            return
        logger.warning("Prediction failed (%s): %s", err.kind, err.error)
        self._apply(generation, OrchestratorState.RESOLVED, result=PredictionResult.failure(err.error))
        if self._debug and isinstance(err.error, CONTRACT_ERRORS):
            raise err.error

    def _apply(
        self,
        generation: int,
        state: OrchestratorState,
        *,
        source_image: Any = _UNSET,
        result: Any = _UNSET,
    ) -> bool:
        """Write a new snapshot if ``generation`` is still current.

        Returns False, leaving state untouched, when the cycle is stale.
        """
        if generation != self._generation:
            logger.debug("Discarding stale transition to %s from generation %d", state, generation)
            return False

        changes: dict[str, Any] = {"state": state}
        if source_image is not _UNSET:
            changes["source_image"] = source_image
        if result is not _UNSET:
            changes["result"] = result
        self._snapshot = replace(self._snapshot, **changes)
        logger.debug("Orchestrator -> %s (generation %d)", state, generation)

        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")
        return True
