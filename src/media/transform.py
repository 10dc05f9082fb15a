"""Image transform backend (Pillow)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from taskqueue.errors import JobValidationError

logger = logging.getLogger(__name__)

# Pillow format name -> (file extension, content type)
FORMATS = {
    "WEBP": ("webp", "image/webp"),
    "JPEG": ("jpg", "image/jpeg"),
    "PNG": ("png", "image/png"),
    "GIF": ("gif", "image/gif"),
}
ALIASES = {"jpg": "JPEG", "jpeg": "JPEG", "webp": "WEBP", "png": "PNG", "gif": "GIF"}


@dataclass(frozen=True)
class TransformOptions:
    format: str = "webp"  # webp | jpeg | png | gif | original
    quality: int = 80


class Transformer:
    """Re-encodes image bytes; identical input and options give identical output."""

    def resolve_format(self, data: bytes, options: TransformOptions) -> str:
        """Pillow format name the output will have."""
        if options.format.lower() == "original":
            return self._open(data).format or "PNG"
        name = ALIASES.get(options.format.lower())
        if name is None:
            raise JobValidationError(f"unsupported image format: {options.format}")
        return name

    def extension(self, fmt: str) -> str:
        return FORMATS.get(fmt, (fmt.lower(), ""))[0]

    def content_type(self, fmt: str) -> str:
        return FORMATS.get(fmt, ("", "application/octet-stream"))[1]

    def transform(self, data: bytes, options: TransformOptions) -> bytes:
        target = self.resolve_format(data, options)
        if options.format.lower() == "original":
            return data
        img = self._open(data)
        if target == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = BytesIO()
        save_kwargs = {"quality": int(options.quality)} if target in ("WEBP", "JPEG") else {"optimize": True}
        img.save(out, format=target, **save_kwargs)
        logger.debug("transformed %s bytes -> %s bytes (%s)", len(data), out.tell(), target)
        return out.getvalue()

    @staticmethod
    def _open(data: bytes) -> Image.Image:
        try:
            img = Image.open(BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise JobValidationError("file is not a readable image") from exc
        return img
