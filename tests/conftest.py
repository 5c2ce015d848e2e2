"""Shared fakes for the ExifTool process and the AI backend."""

from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

import pytest
from loguru import logger

from exifcraft.config import ExifCraftConfig, parse_config
from exifcraft.errors import MetadataWriteError
from exifcraft.metadata import WriteResult


class FakeMetadataTool:
    """In-memory stand-in for MetadataTool, keyed by file name."""

    def __init__(
        self,
        existing: dict[str, dict[str, Any]] | None = None,
        *,
        fail_writes_for: Iterable[str] = (),
    ) -> None:
        self.existing = existing or {}
        self.fail_writes_for = set(fail_writes_for)
        self.reads: list[tuple[str, list[str]]] = []
        self.writes: list[tuple[str, dict[str, str], bool]] = []

    def read_tags(self, image_path: Path, tag_names: Iterable[str]) -> dict[str, Any]:
        names = list(tag_names)
        self.reads.append((image_path.name, names))
        stored = self.existing.get(image_path.name, {})
        return {name: stored[name] for name in names if name in stored}

    def write_tags(
        self,
        image_path: Path,
        write_set: Mapping[str, str],
        *,
        in_place: bool,
    ) -> WriteResult:
        if image_path.name in self.fail_writes_for:
            msg = "Failed to write EXIF data: Error: Not a valid JPEG"
            raise MetadataWriteError(msg)
        self.writes.append((image_path.name, dict(write_set), in_place))
        self.existing.setdefault(image_path.name, {}).update(write_set)
        return WriteResult(updated=1)


class ScriptedGenerator:
    """Generator returning canned answers keyed on prompt text, failing on demand."""

    provider = "scripted"

    def __init__(
        self,
        answers: dict[str, str] | None = None,
        *,
        failing_images: dict[bytes, Exception] | None = None,
        failing_prompts: dict[str, Exception] | None = None,
    ) -> None:
        self.answers = answers or {}
        self.failing_images = failing_images or {}
        self.failing_prompts = failing_prompts or {}
        self.calls: list[tuple[bytes, str]] = []
        self.closed = False

    def generate(self, image_bytes: bytes, prompt: str) -> str:
        self.calls.append((image_bytes, prompt))
        if image_bytes in self.failing_images:
            raise self.failing_images[image_bytes]
        for needle, exc in self.failing_prompts.items():
            if needle in prompt:
                raise exc
        for needle, answer in self.answers.items():
            if needle in prompt:
                return answer
        return f"generated: {prompt}"

    def close(self) -> None:
        self.closed = True


def read_file_bytes(image_path: Path) -> bytes:
    """Image loader that skips decoding; the test files are not real images."""
    return image_path.read_bytes()


def build_config(
    tasks: list[dict[str, Any]] | None = None,
    **overrides: Any,  # noqa: ANN401
) -> ExifCraftConfig:
    data: dict[str, Any] = {
        "tasks": tasks
        or [
            {
                "name": "title",
                "prompt": "Write a title.",
                "tags": [{"name": "Title", "overwritePolicy": "allow"}],
            },
        ],
        "aiModel": {
            "provider": "mock",
            "endpoint": "http://localhost:11434/api/generate",
            "model": "llava",
        },
    }
    data.update(overrides)
    return parse_config(data)


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    """Directory with three small files whose bytes identify them."""
    folder = tmp_path / "images"
    folder.mkdir()
    for stem in ("a", "b", "c"):
        (folder / f"{stem}.jpg").write_bytes(stem.encode())
    return folder


@pytest.fixture
def image_files(image_dir: Path) -> list[Path]:
    return sorted(image_dir.glob("*.jpg"))


@pytest.fixture
def log_records() -> Iterator[list[dict[str, Any]]]:
    """Capture loguru records emitted during the test, down to DEBUG."""
    records: list[dict[str, Any]] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(sink_id)


def events(records: list[dict[str, Any]], name: str) -> list[dict[str, Any]]:
    return [record for record in records if record["message"] == name]
