"""In-memory image preparation for the vision model."""

import os
from io import BytesIO
from pathlib import Path

import pillow_heif
import rawpy
from loguru import logger
from PIL import Image

from exifcraft.errors import ImageFileError
from exifcraft.formats import RAW_EXTENSIONS


DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
MAX_FILE_SIZE_MB = 100

# HEIC/HEIF files are opened by Pillow through this plugin.
pillow_heif.register_heif_opener()


def file_size_mb(image_path: Path) -> float:
    return image_path.stat().st_size / (1024 * 1024)


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image with PIL, decoding camera RAW files through rawpy first."""
    suffix = image_path.suffix.lower()
    if suffix in RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()  # 8-bit RGB np.ndarray
            logger.debug("image_opened_with_rawpy", extension=suffix)
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    logger.debug("opening_image_with_pil", extension=suffix or "")
    return Image.open(image_path)


def prepare_image_bytes(
    image_path: Path,
    *,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> bytes:
    """
    Convert an image file into the JPEG bytes sent to the model.

    RAW files are demosaiced with rawpy, everything else is opened with Pillow. Alpha is
    composited onto white, the image is downscaled to ``max_size`` and re-encoded in
    memory; no temporary files are created.

    Args:
        image_path: Path to the input image file
        jpeg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels after resizing

    Returns:
        JPEG-encoded image bytes.

    Raises:
        ImageFileError: If the file exceeds MAX_FILE_SIZE_MB or cannot be decoded.

    """
    size_mb = file_size_mb(image_path)
    if size_mb > MAX_FILE_SIZE_MB:
        msg = (
            f"File too large ({size_mb:.1f}MB). "
            f"Maximum supported size is {MAX_FILE_SIZE_MB}MB."
        )
        raise ImageFileError(msg)

    try:
        img = _pil_from_image_path(image_path)
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = img.convert("RGB")

        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        buf = BytesIO()
        img.save(buf, format="JPEG", quality=jpeg_quality)
    except OSError as exc:
        msg = f"Unable to decode image {image_path.name}: {exc}"
        raise ImageFileError(msg) from exc

    jpeg_bytes = buf.getvalue()
    logger.debug(
        "image_prepared_for_model",
        width=img.width,
        height=img.height,
        source_mb=round(size_mb, 1),
        size_kb=len(jpeg_bytes) // 1024,
    )
    return jpeg_bytes
