"""Pydantic response schemas for the Yoruba OCR API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from yorubaocr.errors import ErrorKind  # noqa: TC001
from yorubaocr.orchestrator import OrchestratorState, PredictionResult, Snapshot


class PredictionResultSchema(BaseModel):
    """Outcome of the most recent prediction cycle."""

    prediction: str | None = Field(default=None, description="Display string, e.g. 'Prediction: Ìjèmí'")
    error: str | None = Field(default=None, description="User-facing error message")
    error_kind: ErrorKind | None = None

    @classmethod
    def from_result(cls, result: PredictionResult) -> PredictionResultSchema:
        return cls(prediction=result.prediction, error=result.error, error_kind=result.error_kind)


class SessionResponse(BaseModel):
    """Observable orchestrator state."""

    state: OrchestratorState
    source_image: str | None = Field(default=None, description="Reference of the current source image")
    result: PredictionResultSchema | None = None
    generation: int

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot, generation: int) -> SessionResponse:
        return cls(
            state=snapshot.state,
            source_image=snapshot.source_image_ref,
            result=PredictionResultSchema.from_result(snapshot.result) if snapshot.result is not None else None,
            generation=generation,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_state: str
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about the configured model."""

    name: str
    task: str
    input_shape: list[int]
    status: str = Field(description="Lifecycle state: 'unloaded', 'loading', 'loaded' or 'error'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
