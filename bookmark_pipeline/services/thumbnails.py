"""Screenshot to grid-card thumbnail encoding."""

import io

import structlog
from PIL import Image, UnidentifiedImageError
from PIL.Image import Resampling

from bookmark_pipeline.core.errors import PermanentJobError

logger = structlog.get_logger(__name__)


def make_thumbnail(
    screenshot: bytes,
    max_width: int = 640,
    max_height: int = 360,
    quality: int = 80,
) -> bytes:
    """Downscale a screenshot to fit ``max_width`` x ``max_height`` and encode as JPEG.

    Aspect ratio is kept and images are never upscaled.

    Raises:
        PermanentJobError: If the screenshot bytes are not a decodable image
    """
    try:
        img: Image.Image = Image.open(io.BytesIO(screenshot))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise PermanentJobError(f"Screenshot is not a decodable image: {e}") from e

    width, height = img.size
    scale = min(max_width / width, max_height / height, 1.0)
    if scale < 1.0:
        new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
        img = img.resize(new_size, Resampling.LANCZOS)

    if img.mode != "RGB":
        img = img.convert("RGB")

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    data = buf.getvalue()

    logger.debug(
        "thumbnail_encoded",
        source_size=(width, height),
        output_size=img.size,
        bytes=len(data),
    )
    return data
