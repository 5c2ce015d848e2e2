"""Supported image formats and input file resolution."""

from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from exifcraft.errors import InputError


DEFAULT_IMAGE_FORMATS = ("jpg", "jpeg", "png", "heic", "heif", "tif", "tiff", "webp")

# Camera RAW suffixes decoded through rawpy rather than Pillow.
RAW_EXTENSIONS = frozenset(
    {
        ".arw",
        ".cr2",
        ".cr3",
        ".dng",
        ".nef",
        ".nrw",
        ".orf",
        ".pef",
        ".raf",
        ".raw",
        ".rw2",
        ".srw",
    },
)


def normalize_extensions(formats: Iterable[str]) -> set[str]:
    """
    Normalize configured formats into lower-case dotted suffixes.

    Examples:
        >>> sorted(normalize_extensions(["jpg", ".JPEG", " tif ", ""]))
        ['.jpeg', '.jpg', '.tif']

    """
    return {
        f".{fmt.strip().lstrip('.').lower()}"
        for fmt in formats
        if fmt.strip().lstrip(".")
    }


def is_supported(path: Path, formats: Iterable[str]) -> bool:
    """Return True when the path's suffix is one of the configured formats."""
    return path.suffix.lower() in normalize_extensions(formats)


def filter_supported_files(paths: Iterable[Path], formats: Iterable[str]) -> list[Path]:
    """Keep only the paths with a supported suffix, preserving input order."""
    ext_set = normalize_extensions(formats)
    supported = [path for path in paths if path.suffix.lower() in ext_set]
    logger.debug("supported_files_filtered", kept=len(supported), extensions=sorted(ext_set))
    return supported


def get_image_files(directory: Path, formats: Iterable[str]) -> list[Path]:
    """
    List the supported image files directly inside a directory, sorted by path.

    Args:
        directory: Directory to scan (subdirectories are not descended into)
        formats: Configured image formats, with or without leading dots

    Returns:
        Sorted list of regular files whose suffix is supported.

    Raises:
        InputError: If the directory does not exist or is not a directory.

    """
    if not directory.exists():
        msg = f"Directory does not exist: {directory}"
        raise InputError(msg)
    if not directory.is_dir():
        msg = f"Specified path is not a directory: {directory}"
        raise InputError(msg)

    ext_set = normalize_extensions(formats)
    return sorted(
        entry
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix.lower() in ext_set
    )


def collect_image_files(
    directory: Path | None,
    files: Iterable[Path] | None,
    formats: Iterable[str],
) -> list[Path]:
    """
    Resolve CLI inputs into the ordered, de-duplicated batch of image files.

    A directory takes precedence over explicit files. Explicit files are filtered by
    extension only; their existence is re-checked per file during processing.

    Raises:
        InputError: If neither a directory nor files were given, or the directory is invalid.

    """
    formats = list(formats)
    if directory is not None:
        candidates = get_image_files(directory, formats)
    elif files:
        candidates = filter_supported_files(files, formats)
    else:
        msg = "Must specify image directory (-d) or image files (-f)"
        raise InputError(msg)

    unique = {str(path.absolute()): path for path in candidates}
    return [unique[key] for key in sorted(unique)]
