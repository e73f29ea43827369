"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from yorubaocr.api.middleware import GrantedSources, verify_api_key
from yorubaocr.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    SessionResponse,
)
from yorubaocr.api.uploads import UploadPicker

if TYPE_CHECKING:
    from yorubaocr.config import Settings
    from yorubaocr.ml.inference import InferencePool
    from yorubaocr.ml.model_manager import OnnxModelHandle
    from yorubaocr.orchestrator import PredictionOrchestrator, Snapshot

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model(request: Request) -> OnnxModelHandle:
    model: OnnxModelHandle = request.app.state.model
    return model


def _get_orchestrator(request: Request) -> PredictionOrchestrator:
    orchestrator: PredictionOrchestrator = request.app.state.orchestrator
    return orchestrator


def _session(orchestrator: PredictionOrchestrator, snapshot: Snapshot) -> SessionResponse:
    return SessionResponse.from_snapshot(snapshot, orchestrator.generation)


async def _read_upload(request: Request, file: UploadFile, granted: GrantedSources) -> UploadPicker:
    settings = _get_settings(request)
    content = await file.read(settings.max_file_size + 1)
    if len(content) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Image exceeds {settings.max_file_size} bytes",
        )
    return UploadPicker(file.filename, content, granted)


@router.post(
    "/select-image",
    response_model=SessionResponse,
    responses={status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse}},
    summary="Select an image and predict its text",
)
async def select_image(request: Request, file: UploadFile, granted: GrantedSources) -> SessionResponse:
    """Use an uploaded image as the library selection and run a prediction."""
    picker = await _read_upload(request, file, granted)
    orchestrator = _get_orchestrator(request)
    snapshot = await orchestrator.select_image(picker)
    return _session(orchestrator, snapshot)


@router.post(
    "/capture-photo",
    response_model=SessionResponse,
    responses={status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse}},
    summary="Submit a captured photo and predict its text",
)
async def capture_photo(request: Request, file: UploadFile, granted: GrantedSources) -> SessionResponse:
    """Use an uploaded image as a camera capture and run a prediction."""
    picker = await _read_upload(request, file, granted)
    orchestrator = _get_orchestrator(request)
    snapshot = await orchestrator.capture_photo(picker)
    return _session(orchestrator, snapshot)


@router.post("/retry", response_model=SessionResponse, summary="Re-run prediction on the current image")
async def retry(request: Request) -> SessionResponse:
    orchestrator = _get_orchestrator(request)
    snapshot = await orchestrator.retry_predict()
    return _session(orchestrator, snapshot)


@router.post("/clear", response_model=SessionResponse, summary="Discard the current image and result")
async def clear(request: Request) -> SessionResponse:
    orchestrator = _get_orchestrator(request)
    return _session(orchestrator, orchestrator.clear())


@router.get("/session", response_model=SessionResponse, summary="Current prediction state")
async def session(request: Request) -> SessionResponse:
    orchestrator = _get_orchestrator(request)
    return _session(orchestrator, orchestrator.snapshot)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    model = _get_model(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        model_state=str(model.state),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List the configured model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the configured model and its lifecycle state."""
    model = _get_model(request)
    spec = model.spec
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                input_shape=list(spec.input_shape),
                status=str(model.state),
                license=spec.license,
            )
        ]
    )
