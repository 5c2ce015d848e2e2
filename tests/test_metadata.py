"""Tests for the ExifTool wrapper, with a fake in place of the ExifTool process."""

from pathlib import Path
from typing import Any

import pytest
from exiftool.exceptions import ExifToolException

from exifcraft.errors import MetadataError, MetadataReadError, MetadataWriteError
from exifcraft.metadata import (
    IN_PLACE_PARAM,
    MetadataTool,
    WriteResult,
    parse_write_output,
    to_exiftool_value,
)


class FakeExifToolHelper:
    """Records calls the way ExifToolHelper would receive them."""

    def __init__(
        self,
        blocks: list[dict[str, Any]] | None = None,
        *,
        stdout: str = "    1 image files updated\n",
        stderr: str = "",
        error: Exception | None = None,
        start_error: Exception | None = None,
    ) -> None:
        self.blocks = blocks or []
        self.stdout = stdout
        self.stderr = stderr
        self.error = error
        self.start_error = start_error
        self.running = False
        self.run_count = 0
        self.terminate_count = 0
        self.calls: list[tuple[str, list[str], Any, Any]] = []

    def run(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.running = True
        self.run_count += 1

    def terminate(self) -> None:
        self.running = False
        self.terminate_count += 1

    def get_tags(self, files: list[str], tags: list[str]) -> list[dict[str, Any]]:
        self.calls.append(("get", files, tags, None))
        if self.error is not None:
            raise self.error
        return self.blocks

    def set_tags(self, files: list[str], tags: dict[str, Any], params: list[str]) -> str:
        self.calls.append(("set", files, tags, params))
        if self.error is not None:
            raise self.error
        return self.stdout

    @property
    def last_stderr(self) -> str:
        return self.stderr


def test_read_tags_maps_grouped_keys_to_requested_names() -> None:
    """Returned Group:Tag keys are matched back to the configured names."""
    helper = FakeExifToolHelper(
        [
            {
                "SourceFile": "/photos/a.jpg",
                "XMP:Title": "",
                "QuickTime:Title": "Old title",
                "IPTC:Keywords": ["sea", "sky"],
            },
        ],
    )
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    snapshot = tool.read_tags(Path("/photos/a.jpg"), ["XMP-dc:Title", "Keywords", "Artist"])

    assert snapshot == {"XMP-dc:Title": "Old title", "Keywords": ["sea", "sky"]}
    assert helper.calls == [
        ("get", ["/photos/a.jpg"], ["XMP-dc:Title", "Keywords", "Artist"], None),
    ]


def test_read_tags_keeps_blank_value_when_nothing_else() -> None:
    """A tag present only with a blank value is reported as that blank value."""
    helper = FakeExifToolHelper([{"SourceFile": "a.jpg", "EXIF:ImageDescription": "  "}])
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    assert tool.read_tags(Path("a.jpg"), ["ImageDescription"]) == {"ImageDescription": "  "}


def test_read_without_tags_does_not_start_exiftool() -> None:
    """An empty request returns immediately."""
    helper = FakeExifToolHelper()
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    assert tool.read_tags(Path("a.jpg"), []) == {}
    assert helper.run_count == 0


def test_first_use_starts_exiftool_once() -> None:
    """Reads start the process lazily and reuse it afterwards."""
    helper = FakeExifToolHelper()
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    tool.read_tags(Path("a.jpg"), ["Title"])
    tool.read_tags(Path("b.jpg"), ["Title"])

    assert helper.run_count == 1
    assert tool.running


def test_write_tags_in_place_splits_list_tags() -> None:
    """In-place writes pass the overwrite flag; keyword text becomes a list."""
    helper = FakeExifToolHelper(stderr="Warning: [minor] Fixed incorrect URI - a.jpg\n")
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    result = tool.write_tags(
        Path("a.jpg"),
        {"Title": "Sunset, late", "IPTC:Keywords": "sunset, sea, , sky"},
        in_place=True,
    )

    assert result == WriteResult(
        updated=1,
        warnings=["Warning: [minor] Fixed incorrect URI - a.jpg"],
    )
    kind, files, tags, params = helper.calls[0]
    assert kind == "set"
    assert files == ["a.jpg"]
    assert tags == {"Title": "Sunset, late", "IPTC:Keywords": ["sunset", "sea", "sky"]}
    assert params == [IN_PLACE_PARAM]


def test_write_tags_keeps_backup_when_not_in_place() -> None:
    """Without in-place writes ExifTool keeps its _original copy."""
    helper = FakeExifToolHelper()
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    tool.write_tags(Path("a.jpg"), {"Title": "Sunset"}, in_place=False)

    assert helper.calls[0][3] == []


@pytest.mark.parametrize("error", [ExifToolException("exit status 1"), ValueError("bad tag")])
def test_read_and_write_errors_are_wrapped(error: Exception) -> None:
    """ExifTool failures become metadata errors carrying the original message."""
    tool = MetadataTool(FakeExifToolHelper(error=error))  # type: ignore[arg-type]

    with pytest.raises(MetadataReadError, match="Failed to read EXIF data"):
        tool.read_tags(Path("a.jpg"), ["Title"])
    with pytest.raises(MetadataWriteError, match="Failed to write EXIF data"):
        tool.write_tags(Path("a.jpg"), {"Title": "x"}, in_place=True)


def test_init_failure_raises_metadata_error() -> None:
    """A missing exiftool binary is reported clearly."""
    helper = FakeExifToolHelper(start_error=FileNotFoundError("exiftool"))
    tool = MetadataTool(helper)  # type: ignore[arg-type]

    with pytest.raises(MetadataError, match="Unable to start ExifTool"):
        tool.init()


def test_shutdown_is_idempotent_and_context_manager_releases() -> None:
    """shutdown() only terminates a running process, however often it is called."""
    helper = FakeExifToolHelper()

    with MetadataTool(helper) as tool:  # type: ignore[arg-type]
        assert tool.running
    tool.shutdown()
    tool.shutdown()

    assert helper.run_count == 1
    assert helper.terminate_count == 1
    assert not tool.running


def test_shutdown_before_init_is_a_no_op() -> None:
    """A tool that never started has nothing to release."""
    MetadataTool().shutdown()


def test_parse_write_output_sums_counters() -> None:
    """Created, updated and unchanged counters are read from ExifTool's summary."""
    stdout = "    1 image files created\n    2 image files updated\n    1 image files unchanged\n"

    assert parse_write_output(stdout) == WriteResult(created=1, updated=2, unchanged=1)


def test_to_exiftool_value_only_splits_list_tags() -> None:
    """Only list-valued tags are split on commas."""
    assert to_exiftool_value("XMP-dc:Subject", "a, b") == ["a", "b"]
    assert to_exiftool_value("ImageDescription", "a, b") == "a, b"
