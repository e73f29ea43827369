"""Model handle: load, run and release the on-device OCR model.

A single ``OnnxModelHandle`` is created per process and injected into the
prediction orchestrator. Its lifecycle is observable through ``state``:

    unloaded -> loading -> loaded
                        -> error

``loaded`` and ``error`` are terminal until ``unload()`` resets the handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from yorubaocr.errors import InferenceError, ModelNotReadyError
from yorubaocr.ml.preprocessing import to_model_input

if TYPE_CHECKING:
    from collections.abc import Callable

    import numpy as np
    from numpy.typing import NDArray

    from yorubaocr.config import Settings
    from yorubaocr.ml.inference import InferencePool

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class ModelRunner(Protocol):
    """Protocol for the opaque inference capability the orchestrator drives."""

    @property
    def state(self) -> ModelState:
        """Return the current lifecycle state."""
        ...

    async def load(self) -> ModelState:
        """Load the model asset and return the resulting state."""
        ...

    async def run(self, tensor: NDArray[np.float32]) -> list[Any]:
        """Run one inference and return the ordered model outputs."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for the bundled ONNX model."""

    name: str
    filename: str
    input_shape: tuple[int, ...]
    task: str
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "yoruba_ocr": ModelSpec(
        name="yoruba_ocr",
        filename="yoruba_ocr_model.onnx",
        input_shape=(1, 32, 32, 3),
        task="text_recognition",
        license="Proprietary",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelHandle:
    """Owns the single ONNX InferenceSession and its load state."""

    def __init__(self, settings: Settings, pool: InferencePool) -> None:
        self._settings = settings
        self._pool = pool
        self._spec = self._get_spec(settings.model_name)
        self._check_input_size(settings.input_size)
        self._model_path = Path(settings.model_path)

        self._lock = threading.Lock()
        self._state = ModelState.UNLOADED
        self._session: InferenceSession | None = None
        self._input_name: str | None = None
        self._listeners: list[Callable[[ModelState], None]] = []

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> ModelSpec:
        return self._spec

    @property
    def state(self) -> ModelState:
        with self._lock:
            return self._state

    def subscribe(self, listener: Callable[[ModelState], None]) -> None:
        """Register a callback invoked on every state change."""
        self._listeners.append(listener)

    async def load(self) -> ModelState:
        """Create the InferenceSession from the model asset.

        Only an unloaded handle starts loading; any other state is returned
        unchanged. A failed load leaves the handle in ``error``.
        """
        with self._lock:
            if self._state is not ModelState.UNLOADED:
                logger.info("Load of %s skipped (state=%s)", self.name, self._state)
                return self._state
            self._state = ModelState.LOADING
        self._notify(ModelState.LOADING)

        try:
            session = await self._pool.run(self._create_session)
        except Exception:
            logger.exception("Failed to load model %s from %s", self.name, self._model_path)
            self._set_state(ModelState.ERROR)
            return ModelState.ERROR

        with self._lock:
            self._session = session
            self._input_name = session.get_inputs()[0].name
        logger.info("Loaded session for %s from %s", self.name, self._model_path)
        self._set_state(ModelState.LOADED)
        return ModelState.LOADED

    def unload(self) -> None:
        """Release the session and reset to ``unloaded``."""
        with self._lock:
            self._session = None
            self._input_name = None
            self._state = ModelState.UNLOADED
        logger.info("Model session for %s released", self.name)
        self._notify(ModelState.UNLOADED)

    async def run(self, tensor: NDArray[np.float32]) -> list[Any]:
        """Run the model on one flat input tensor.

        Returns:
            The session outputs in model order.

        Raises:
            ModelNotReadyError: If called before the model is loaded.
            InferenceError: If ONNX Runtime fails.
        """
        with self._lock:
            session = self._session
            input_name = self._input_name
            state = self._state
        if state is not ModelState.LOADED or session is None or input_name is None:
            raise ModelNotReadyError(f"Model {self.name} is {state}, cannot run inference")

        batch = to_model_input(tensor, self._spec.input_shape[1])
        try:
            outputs = await self._pool.run(session.run, None, {input_name: batch})
        except Exception as exc:
            raise InferenceError(f"Inference with {self.name} failed: {exc}") from exc
        return list(outputs)

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _check_input_size(self, input_size: int) -> None:
        _, height, width, _ = self._spec.input_shape
        if input_size != height or input_size != width:
            raise ValueError(
                f"YORUBAOCR_INPUT_SIZE={input_size} does not match {self._spec.name} input {width}x{height}"
            )

    def _create_session(self) -> InferenceSession:
        if not self._model_path.is_file():
            raise FileNotFoundError(f"Model asset not found: {self._model_path}")
        return InferenceSession(
            str(self._model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

    def _set_state(self, state: ModelState) -> None:
        with self._lock:
            self._state = state
        self._notify(state)

    def _notify(self, state: ModelState) -> None:
        for listener in list(self._listeners):
            listener(state)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                ("CUDAExecutionProvider", {"device_id": 0}),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
