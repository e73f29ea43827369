"""Request guards: API key authentication and image-source permissions.

Over HTTP the API key plays the role of the app's sign-in, and
``YORUBAOCR_ALLOWED_SOURCES`` plays the role of the OS permission prompt for
the photo library and the camera.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from yorubaocr.orchestrator import PickerKind

if TYPE_CHECKING:
    from yorubaocr.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)


def _settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries ``Authorization: Bearer <YORUBAOCR_API_KEY>``.

    No configured key means the service is open.
    """
    expected = _settings(request).api_key
    if expected is None:
        return

    presented = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def granted_sources(request: Request) -> frozenset[PickerKind]:
    """Image sources this deployment lets clients pick from."""
    return frozenset(PickerKind(source) for source in _settings(request).allowed_sources)


GrantedSources = Annotated[frozenset[PickerKind], Depends(granted_sources)]
