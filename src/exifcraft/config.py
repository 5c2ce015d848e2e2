"""Configuration schema, loading and validation."""

import json
import tomllib
import urllib.parse
from collections.abc import Iterable
from pathlib import Path
from typing import Annotated, Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from exifcraft.errors import ConfigError
from exifcraft.formats import DEFAULT_IMAGE_FORMATS
from exifcraft.reconcile import OverwritePolicy


DEFAULT_TIMEOUT_SECONDS = 60.0
CONFIG_SUFFIXES = (".json", ".toml")

Provider = Literal["ollama", "openai", "mock"]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )


class TagBinding(_ConfigModel):
    """
    One destination tag for a task's generated text.

    A binding without an overwrite policy follows the configuration's
    ``defaultOverwritePolicy``.
    """

    name: str = Field(min_length=1)
    overwrite_policy: OverwritePolicy | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_overwrite_flags(cls, data: Any) -> Any:  # noqa: ANN401
        """Accept the older ``avoidOverwrite`` / ``allowOverwrite`` boolean flags."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "avoidOverwrite" in data:
            avoid = data.pop("avoidOverwrite")
            data.setdefault("overwritePolicy", "avoid" if avoid else "allow")
        if "allowOverwrite" in data:
            allow = data.pop("allowOverwrite")
            data.setdefault("overwritePolicy", "allow" if allow else "avoid")
        return data


class Task(_ConfigModel):
    """A prompt whose answer is written to one or more tags."""

    name: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    tags: list[TagBinding] = Field(min_length=1)
    enabled: bool = True


class ModelOptions(_ConfigModel):
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)


class ModelConfig(_ConfigModel):
    """How to reach the AI backend."""

    provider: Provider
    endpoint: str
    model: str = Field(min_length=1)
    options: ModelOptions = Field(default_factory=ModelOptions)
    key: str | None = Field(default=None, repr=False)
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        parsed = urllib.parse.urlparse(value)
        if parsed.scheme not in {"http", "https"}:
            msg = f"endpoint must be an http(s) URL, got scheme {parsed.scheme!r}"
            raise ValueError(msg)
        if not parsed.netloc:
            msg = "endpoint is missing a host"
            raise ValueError(msg)
        return value


class ExifCraftConfig(_ConfigModel):
    """Top-level configuration file contents."""

    tasks: list[Task] = Field(min_length=1)
    ai_model: ModelConfig
    image_formats: list[Annotated[str, Field(min_length=1)]] = Field(
        default_factory=lambda: list(DEFAULT_IMAGE_FORMATS),
    )
    preserve_original: bool = True
    base_prompt: str = ""
    default_overwrite_policy: OverwritePolicy = OverwritePolicy.ALLOW
    # Job defaults used when the matching CLI flags are not given
    verbose: bool | None = None
    dry_run: bool | None = None

    @property
    def enabled_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.enabled]

    def redacted(self) -> dict[str, Any]:
        """Return the configuration as JSON-ready data without credentials."""
        return self.model_dump(mode="json", by_alias=True, exclude={"ai_model": {"key"}})


def find_tag_collisions(tasks: Iterable[Task]) -> dict[str, list[str]]:
    """
    Return the tags bound by more than one enabled task, with the task names in order.

    Examples:
        >>> tasks = [
        ...     Task(name="a", prompt="p", tags=[TagBinding(name="Description")]),
        ...     Task(name="b", prompt="p", tags=[TagBinding(name="Description")]),
        ... ]
        >>> find_tag_collisions(tasks)
        {'Description': ['a', 'b']}

    """
    owners: dict[str, list[str]] = {}
    for task in tasks:
        if not task.enabled:
            continue
        for binding in task.tags:
            owners.setdefault(binding.name, []).append(task.name)
    return {tag: names for tag, names in owners.items() if len(names) > 1}


def _read_config_data(config_path: Path) -> Any:  # noqa: ANN401
    suffix = config_path.suffix.lower()
    if suffix not in CONFIG_SUFFIXES:
        msg = f"Configuration file must be JSON (.json) or TOML (.toml), got: {suffix or '<none>'}"
        raise ConfigError(msg)

    try:
        content = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        msg = f"Configuration file does not exist: {config_path}"
        raise ConfigError(msg) from exc
    except OSError as exc:
        msg = f"Configuration file cannot be read: {config_path}: {exc}"
        raise ConfigError(msg) from exc

    try:
        if suffix == ".toml":
            return tomllib.loads(content)
        return json.loads(content)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        msg = f"Configuration file format error: {exc}"
        raise ConfigError(msg) from exc


def parse_config(data: Any) -> ExifCraftConfig:  # noqa: ANN401
    """Validate already-decoded configuration data."""
    try:
        config = ExifCraftConfig.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise ConfigError(msg) from exc

    for tag, task_names in find_tag_collisions(config.tasks).items():
        logger.warning(
            "tag_bound_by_multiple_tasks",
            tag=tag,
            tasks=task_names,
            winner=task_names[-1],
        )
    return config


def load_config(config_path: Path) -> ExifCraftConfig:
    """
    Load and validate a configuration file.

    Args:
        config_path: Path to a ``.json`` or ``.toml`` configuration file

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file is missing, has an unsupported suffix, cannot be parsed
            or does not match the schema.

    """
    config = parse_config(_read_config_data(config_path))
    logger.debug(
        "config_loaded",
        path=str(config_path),
        tasks=[task.name for task in config.tasks],
        provider=config.ai_model.provider,
        model=config.ai_model.model,
    )
    return config
