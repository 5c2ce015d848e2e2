"""
Read and write image metadata through one persistent ExifTool process.

The process is a shared resource with an explicit lifecycle: ``init()`` starts it (or
the first read/write does), ``shutdown()`` terminates it. The CLI registers
``shutdown()`` for normal exit and termination signals.
"""

import re
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from exiftool import ExifToolHelper  # type: ignore[attr-defined]
from exiftool.exceptions import ExifToolException
from loguru import logger
from pydantic import BaseModel, Field

from exifcraft.errors import MetadataError, MetadataReadError, MetadataWriteError


# Tags that hold a list of values; generated comma-separated text is split for them.
LIST_TAGS = frozenset({"keywords", "subject", "hierarchicalsubject", "catalogsets"})
IN_PLACE_PARAM = "-overwrite_original_in_place"
_COUNT_RE = re.compile(r"(\d+)\s+image files?\s+(created|updated|unchanged)")


class WriteResult(BaseModel):
    """Counters reported by ExifTool for one write."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    warnings: list[str] = Field(default_factory=list)


def bare_tag_name(tag: str) -> str:
    """
    Strip any group prefix from a tag name.

    Examples:
        >>> bare_tag_name("XMP-dc:Title"), bare_tag_name("Keywords")
        ('Title', 'Keywords')

    """
    return tag.rsplit(":", 1)[-1]


def _values_for(tag: str, block: Mapping[str, Any]) -> list[Any]:
    wanted = bare_tag_name(tag).casefold()
    return [
        value
        for key, value in block.items()
        if key != "SourceFile" and bare_tag_name(key).casefold() == wanted
    ]


def _pick_value(values: list[Any]) -> Any:  # noqa: ANN401
    """Return the first non-blank value found across groups, else the first value."""
    for value in values:
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, list) and not value:
            continue
        return value
    return values[0]


def to_exiftool_value(tag: str, value: str) -> str | list[str]:
    """
    Shape a generated value for ExifTool, splitting list tags on commas.

    Examples:
        >>> to_exiftool_value("IPTC:Keywords", "sky, sea ,, sun")
        ['sky', 'sea', 'sun']
        >>> to_exiftool_value("Title", "Sky, sea")
        'Sky, sea'

    """
    if bare_tag_name(tag).casefold() in LIST_TAGS:
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def parse_write_output(stdout: str, stderr: str = "") -> WriteResult:
    """
    Parse ExifTool's summary lines into a WriteResult.

    Examples:
        >>> parse_write_output("    1 image files updated\\n", "Warning: [minor] x - a.jpg")
        WriteResult(created=0, updated=1, unchanged=0, warnings=['Warning: [minor] x - a.jpg'])

    """
    counts = {"created": 0, "updated": 0, "unchanged": 0}
    for number, kind in _COUNT_RE.findall(stdout or ""):
        counts[kind] += int(number)
    warnings = [
        line.strip()
        for line in (stderr or "").splitlines()
        if line.strip().startswith("Warning")
    ]
    return WriteResult(**counts, warnings=warnings)


class MetadataTool:
    """Explicitly managed wrapper around a persistent ExifTool process."""

    def __init__(self, helper: ExifToolHelper | None = None) -> None:
        self._helper = helper
        self._lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._helper is not None and bool(self._helper.running)

    def init(self) -> None:
        """Start the ExifTool process if it is not already running."""
        with self._lock:
            if self.running:
                return
            try:
                if self._helper is None:
                    self._helper = ExifToolHelper()  # type: ignore[no-untyped-call]
                self._helper.run()
            except (OSError, ExifToolException) as exc:
                msg = f"Unable to start ExifTool, is it installed and on PATH? ({exc})"
                raise MetadataError(msg) from exc
            logger.debug("exiftool_started")

    def shutdown(self) -> None:
        """Flush and terminate the ExifTool process. Safe to call more than once."""
        with self._lock:
            if not self.running:
                return
            try:
                self._helper.terminate()  # type: ignore[union-attr]
            except (OSError, ExifToolException) as exc:
                logger.warning("exiftool_shutdown_failed", error=str(exc))
            else:
                logger.debug("exiftool_stopped")

    def __enter__(self) -> Self:
        self.init()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    def read_tags(self, image_path: Path, tag_names: Iterable[str]) -> dict[str, Any]:
        """
        Read the current values of the requested tags.

        Args:
            image_path: Image to read from
            tag_names: Tag names as configured, bare (``Title``) or grouped (``XMP-dc:Title``)

        Returns:
            Mapping keyed by the requested names; tags absent from the file are absent.

        Raises:
            MetadataReadError: If ExifTool fails to read the file.

        """
        tags = list(dict.fromkeys(tag_names))
        if not tags:
            return {}

        with self._lock:
            self.init()
            try:
                blocks = self._helper.get_tags(files=[str(image_path)], tags=tags)  # type: ignore[union-attr]
            except (ValueError, TypeError, ExifToolException) as exc:
                msg = f"Failed to read EXIF data: {exc}"
                raise MetadataReadError(msg) from exc

        snapshot: dict[str, Any] = {}
        for block in blocks:
            for tag in tags:
                if tag in snapshot:
                    continue
                if values := _values_for(tag, block):
                    snapshot[tag] = _pick_value(values)
        logger.debug("existing_tags_read", requested=len(tags), found=sorted(snapshot))
        return snapshot

    def write_tags(
        self,
        image_path: Path,
        write_set: Mapping[str, str],
        *,
        in_place: bool,
    ) -> WriteResult:
        """
        Commit a final write-set to the image.

        Args:
            image_path: Image to modify
            write_set: Tag name to generated value
            in_place: Overwrite the original file; otherwise ExifTool keeps an ``_original`` copy

        Returns:
            WriteResult with ExifTool's counters and warnings.

        Raises:
            MetadataWriteError: If ExifTool rejects the write.

        """
        tags = {tag: to_exiftool_value(tag, value) for tag, value in write_set.items()}
        params = [IN_PLACE_PARAM] if in_place else []

        with self._lock:
            self.init()
            try:
                stdout = self._helper.set_tags(  # type: ignore[union-attr]
                    files=[str(image_path)],
                    tags=tags,
                    params=params,
                )
            except (ValueError, TypeError, ExifToolException) as exc:
                msg = f"Failed to write EXIF data: {exc}"
                raise MetadataWriteError(msg) from exc
            stderr = self._helper.last_stderr  # type: ignore[union-attr]

        result = parse_write_output(stdout, stderr)
        for warning in result.warnings:
            logger.warning("exiftool_warning", message=warning)
        logger.info(
            "metadata_written",
            tags=sorted(tags),
            in_place=in_place,
            updated=result.updated,
            unchanged=result.unchanged,
        )
        return result
