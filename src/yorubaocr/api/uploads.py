"""Image picker backed by an HTTP upload.

Over HTTP there is no gallery or camera dialog: the client already chose the
file. Permission is granted per source by configuration, and an empty upload
is treated as a cancelled pick.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING

from yorubaocr.ml.preprocessing import SourceImage

if TYPE_CHECKING:
    from collections.abc import Set

    from yorubaocr.orchestrator import PickerKind

logger = logging.getLogger(__name__)


class UploadPicker:
    """One-shot picker that hands the uploaded bytes to the orchestrator."""

    def __init__(self, filename: str | None, content: bytes, granted: Set[PickerKind]) -> None:
        self._filename = filename or "upload"
        self._content = content
        self._granted = granted

    async def request_permission(self, kind: PickerKind) -> bool:
        if kind not in self._granted:
            logger.info("Upload rejected: %s source is not allowed", kind)
            return False
        return True

    async def pick(self, kind: PickerKind) -> SourceImage | None:
        if not self._content:
            return None
        return SourceImage(uri=f"upload://{kind}/{uuid.uuid4().hex}/{self._filename}", content=self._content)
