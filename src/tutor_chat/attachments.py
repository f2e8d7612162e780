"""Read a selected file and turn it into a transportable attachment payload."""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Awaitable, Callable
import logging
import mimetypes
from pathlib import Path

from .exceptions import AttachmentError
from .models import AttachmentHandle

LOGGER = logging.getLogger(__name__)

FileReader = Callable[[Path], Awaitable[bytes]]

DEFAULT_MIME_TYPE = "application/octet-stream"


async def _read_bytes(path: Path) -> bytes:
    return await asyncio.to_thread(path.read_bytes)


class AttachmentEncoder:
    """Encode one selected file per call into base64 plus its MIME type."""

    def __init__(
        self,
        *,
        max_bytes: int = 10 * 1024 * 1024,  # 10 MB
        reader: FileReader | None = None,
    ) -> None:
        self.max_bytes = max_bytes
        self._reader = reader or _read_bytes

    @staticmethod
    def guess_mime_type(path: Path) -> str:
        mime, _ = mimetypes.guess_type(path.name)
        return mime or DEFAULT_MIME_TYPE

    def validate(self, path: str | Path) -> Path:
        """Resolve ``path`` and check it is a readable file within size limits.

        Raises:
            AttachmentError: when the file is missing, not a file or too large
        """
        try:
            resolved = Path(path).expanduser().resolve()
            if not resolved.exists():
                raise AttachmentError(f"Attachment not found: {path}")
            if not resolved.is_file():
                raise AttachmentError(f"Not a file: {path}")
            size = resolved.stat().st_size
        except (OSError, ValueError, RuntimeError) as exc:
            raise AttachmentError(f"Error validating attachment: {exc}") from exc
        if size > self.max_bytes:
            max_mb = self.max_bytes / (1024 * 1024)
            raise AttachmentError(f"Attachment too large (max {max_mb:.1f}MB)")
        return resolved

    async def encode(self, path: str | Path) -> AttachmentHandle:
        """Read and encode the file; never cached between calls.

        Raises:
            AttachmentError: when the file cannot be validated or read
        """
        resolved = self.validate(path)
        try:
            data = await self._reader(resolved)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - readers fail in many ways.
            LOGGER.warning(
                "attachment.read_failed",
                extra={"event": "attachment.read_failed", "path": str(resolved)},
            )
            raise AttachmentError(f"Unable to read {resolved.name}: {exc}") from exc

        handle = AttachmentHandle(
            base64_data=base64.b64encode(data).decode("ascii"),
            mime_type=self.guess_mime_type(resolved),
            name=resolved.name,
        )
        LOGGER.info(
            "attachment.encoded",
            extra={
                "event": "attachment.encoded",
                "mime_type": handle.mime_type,
                "bytes": len(data),
            },
        )
        return handle
