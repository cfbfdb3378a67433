"""Resize and re-encode photos with Pillow."""
from __future__ import annotations
import io
from dataclasses import dataclass
from PIL import Image, ImageOps, UnidentifiedImageError
from app.core.errors import TransformFailure

OUTPUT_FORMAT = "WEBP"
OUTPUT_CONTENT_TYPE = "image/webp"


@dataclass(frozen=True)
class TransformedImage:
    data: bytes
    width: int
    height: int
    original_width: int
    original_height: int


def transform_image(data: bytes, max_width: int, quality: int) -> TransformedImage:
    """
    Downscale to ``max_width`` (never upscale) and re-encode as WebP.

    Args:
        data: Original image bytes in any format Pillow can read
        max_width: Maximum output width in pixels; aspect ratio is kept
        quality: Encoder quality, 0-100

    Raises:
        TransformFailure: If the bytes are not a readable image
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            original_width, original_height = img.size
            out = ImageOps.exif_transpose(img)
            if out.mode not in ("RGB", "RGBA"):
                has_alpha = out.mode in ("LA", "PA") or "transparency" in out.info
                out = out.convert("RGBA" if has_alpha else "RGB")
            if out.width > max_width:
                height = max(1, round(out.height * max_width / out.width))
                out = out.resize((max_width, height), Image.Resampling.LANCZOS)
            buf = io.BytesIO()
            out.save(buf, format=OUTPUT_FORMAT, quality=quality)
            width, height = out.size
    except UnidentifiedImageError as e:
        raise TransformFailure("unsupported or corrupt image", transient=False) from e
    except Image.DecompressionBombError as e:
        raise TransformFailure(f"image too large: {e}", transient=False) from e
    except (OSError, ValueError) as e:
        raise TransformFailure(f"image decode/encode failed: {e}", transient=False) from e

    return TransformedImage(
        data=buf.getvalue(),
        width=width,
        height=height,
        original_width=original_width,
        original_height=original_height,
    )
