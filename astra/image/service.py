"""Image service used by the task dispatcher's image paths.

Role in pipeline:
    - Receives final prompts (and a source image for edits) from orchestration.
    - Normalizes the source image into an upload the edit endpoint accepts.
    - Returns `ImageResult` objects to `astra.llm.service.AIService`.

Image normalization:
    Source bytes are inspected with Pillow. PNG, JPEG, and WEBP are uploaded as-is
    with a matching filename and MIME type; any other decodable format is
    re-encoded as PNG.

Error handling strategy:
    - Undecodable source images raise `ValueError`.
    - Provider exceptions from `astra.image.client` propagate unchanged.
"""

import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from astra.image.client import send_image_edit, send_image_generation


logger = logging.getLogger(__name__)

_UPLOAD_FORMATS = {
    "PNG": ("image.png", "image/png"),
    "JPEG": ("image.jpg", "image/jpeg"),
    "WEBP": ("image.webp", "image/webp"),
}


@dataclass
class ImageResult:
    """Image produced by a generate or edit call."""

    data: bytes
    revised_prompt: str | None = None


def image_mime_type(data: bytes) -> str:
    """Return the MIME type Pillow detects for `data`, defaulting to PNG."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return Image.MIME.get(image.format or "", "image/png")
    except (UnidentifiedImageError, OSError):
        return "image/png"


def prepare_upload(data: bytes) -> tuple[bytes, str, str]:
    """Return `(bytes, filename, mime_type)` suitable for an edit upload.

    Raises:
        ValueError: When `data` is not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image_format = (image.format or "").upper()
            if image_format in _UPLOAD_FORMATS:
                filename, mime_type = _UPLOAD_FORMATS[image_format]
                return data, filename, mime_type

            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            logger.debug("Re-encoded %s source image as PNG", image_format or "unknown")
            return buffer.getvalue(), "image.png", "image/png"
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("The selected image could not be read.") from exc


def generate_image(model: str, api_key: str | None, prompt: str) -> ImageResult:
    """Generate one image for `prompt`."""
    data, revised_prompt = send_image_generation(model, api_key, prompt)
    return ImageResult(data=data, revised_prompt=revised_prompt)


def edit_image(
    model: str,
    api_key: str | None,
    prompt: str,
    image_bytes: bytes,
    filename: str | None = None,
    mime_type: str | None = None,
) -> ImageResult:
    """Edit `image_bytes` according to `prompt`.

    Args:
        filename: Upload filename. Detected from the image when omitted.
        mime_type: Upload MIME type. Detected from the image when omitted.
    """
    if filename is None or mime_type is None:
        image_bytes, filename, mime_type = prepare_upload(image_bytes)
    data, revised_prompt = send_image_edit(
        model,
        api_key,
        prompt,
        image_bytes,
        filename,
        mime_type,
    )
    return ImageResult(data=data, revised_prompt=revised_prompt)
