"""
Batch processing: generate text for every enabled task, reconcile it against the
tags already in the image and commit the result, one file at a time.

Every per-file and per-task failure is caught here and turned into a structured
outcome; only an empty batch aborts the run.
"""

import os
import threading
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from exifcraft.ai_client import ResponseGenerator, generate_response
from exifcraft.config import ExifCraftConfig, Task
from exifcraft.errors import ImageFileError, NoImagesFoundError
from exifcraft.images import prepare_image_bytes
from exifcraft.metadata import MetadataTool
from exifcraft.reconcile import OverwritePolicy, merge_task_output, preview, reconcile


ImageLoader = Callable[[Path], bytes]
ProgressCallback = Callable[[int, int, str], None]


class ProcessingOptions(BaseModel):
    """Per-run switches shared by every file in the batch."""

    dry_run: bool = False
    preserve_original: bool = True
    base_prompt: str = ""
    default_policy: OverwritePolicy = OverwritePolicy.ALLOW
    # Record a file as failed when every attempted task raised.
    fail_on_generation_error: bool = True
    preview_length: int = 100

    @classmethod
    def from_config(
        cls,
        config: ExifCraftConfig,
        *,
        dry_run: bool = False,
        fail_on_generation_error: bool = True,
    ) -> "ProcessingOptions":
        return cls(
            dry_run=dry_run,
            preserve_original=config.preserve_original,
            base_prompt=config.base_prompt,
            default_policy=config.default_overwrite_policy,
            fail_on_generation_error=fail_on_generation_error,
        )


class ProcessingOutcome(BaseModel):
    """What happened to one file."""

    file_name: str
    success: bool
    error: str | None = None
    # Tags committed, or the tags that would have been committed in a dry run
    written: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
    task_errors: dict[str, str] = Field(default_factory=dict)
    dry_run: bool = False


class FailedFile(BaseModel):
    file_name: str
    error: str


class RunSummary(BaseModel):
    """Aggregate result of a batch, in input order."""

    outcomes: list[ProcessingOutcome] = Field(default_factory=list)
    cancelled: list[str] = Field(default_factory=list)

    @property
    def successful(self) -> list[str]:
        return [outcome.file_name for outcome in self.outcomes if outcome.success]

    @property
    def failed(self) -> list[FailedFile]:
        return [
            FailedFile(file_name=outcome.file_name, error=outcome.error or "unknown error")
            for outcome in self.outcomes
            if not outcome.success
        ]

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def log_summary(self) -> None:
        logger.info(
            "processing_summary",
            total_files=self.total,
            successful=len(self.successful),
            failed=len(self.failed),
            cancelled=len(self.cancelled),
        )
        for failure in self.failed:
            logger.error("file_failed", file=failure.file_name, error=failure.error)


def display_names(image_files: Sequence[Path]) -> list[str]:
    """
    Name each file relative to the deepest directory holding the whole batch.

    Files from a single directory keep their bare names; files with the same name in
    different directories stay distinguishable.

    Examples:
        >>> display_names([Path("/p/a.jpg"), Path("/p/b.jpg")])
        ['a.jpg', 'b.jpg']
        >>> display_names([Path("/p/x/a.jpg"), Path("/p/y/a.jpg")])
        ['x/a.jpg', 'y/a.jpg']

    """
    if not image_files:
        return []
    absolute = [path.absolute() for path in image_files]
    root = Path(os.path.commonpath([path.parent for path in absolute]))
    return [path.relative_to(root).as_posix() for path in absolute]


def _generate_pending(
    image_bytes: bytes,
    tasks: Iterable[Task],
    generator: ResponseGenerator,
    options: ProcessingOptions,
) -> tuple[dict[str, str], dict[str, OverwritePolicy], dict[str, Exception], int]:
    """
    Run every enabled task and merge the outputs into one pending write-set.

    Returns:
        Tuple of (pending, policies, task_errors, attempted) where task_errors maps the
        name of each failed task to its exception and attempted counts enabled tasks.

    """
    pending: dict[str, str] = {}
    policies: dict[str, OverwritePolicy] = {}
    task_errors: dict[str, Exception] = {}
    attempted = 0

    for task in tasks:
        if not task.enabled:
            logger.debug("task_disabled_skipped", task=task.name)
            continue
        attempted += 1
        try:
            text = generate_response(generator, image_bytes, options.base_prompt + task.prompt)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_generation_failed", task=task.name, error=str(exc))
            task_errors[task.name] = exc
            continue

        if not text:
            logger.warning("task_generated_empty_response", task=task.name)
            continue
        logger.debug("task_response", task=task.name, preview=preview(text, options.preview_length))
        merge_task_output(pending, policies, task.tags, text)

    return pending, policies, task_errors, attempted


def _process_image(
    image_path: Path,
    tasks: Sequence[Task],
    generator: ResponseGenerator,
    tool: MetadataTool,
    options: ProcessingOptions,
    image_loader: ImageLoader,
    file_name: str,
) -> ProcessingOutcome:
    if not image_path.is_file():
        msg = f"Image file does not exist: {image_path}"
        raise ImageFileError(msg)

    # One conversion serves every task for this file.
    image_bytes = image_loader(image_path)
    pending, policies, task_errors, attempted = _generate_pending(
        image_bytes,
        tasks,
        generator,
        options,
    )
    error_messages = {name: str(exc) for name, exc in task_errors.items()}

    if not pending:
        if task_errors and len(task_errors) == attempted and options.fail_on_generation_error:
            raise list(task_errors.values())[-1]
        logger.warning("no_tags_generated", task_errors=len(task_errors))
        return ProcessingOutcome(
            file_name=file_name,
            success=True,
            task_errors=error_messages,
            dry_run=options.dry_run,
        )

    existing = tool.read_tags(image_path, pending)
    result = reconcile(pending, policies, existing, default_policy=options.default_policy)
    for tag in result.skipped:
        logger.info("tag_kept_existing_value", tag=tag)

    if result.is_empty:
        logger.info("no_tags_to_write_skip", skipped=result.skipped)
    elif options.dry_run:
        for tag, value in result.to_write.items():
            logger.info(
                "dry_run_would_write",
                tag=tag,
                value=preview(value, options.preview_length),
            )
    else:
        tool.write_tags(image_path, result.to_write, in_place=not options.preserve_original)

    return ProcessingOutcome(
        file_name=file_name,
        success=True,
        written=result.to_write,
        skipped=result.skipped,
        task_errors=error_messages,
        dry_run=options.dry_run,
    )


def process_image(
    image_path: Path,
    tasks: Sequence[Task],
    *,
    generator: ResponseGenerator,
    tool: MetadataTool,
    options: ProcessingOptions,
    image_loader: ImageLoader = prepare_image_bytes,
    file_name: str | None = None,
) -> ProcessingOutcome:
    """
    Process one image and convert any failure into a failed outcome.

    Args:
        image_path: Image to tag
        tasks: Configured tasks, in declaration order (later tasks win tag collisions)
        generator: Provider strategy used for every task
        tool: Metadata process used to read existing tags and write the result
        options: Run-wide switches (dry run, backups, base prompt, default policy)
        image_loader: Turns the image into the bytes sent to the model
        file_name: Name reported in the outcome and logs; defaults to the file name

    Returns:
        ProcessingOutcome; ``success`` is False only when the file itself failed.

    """
    file_name = file_name or image_path.name
    with logger.contextualize(file=file_name):
        try:
            outcome = _process_image(
                image_path,
                tasks,
                generator,
                tool,
                options,
                image_loader,
                file_name,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("file_processing_failed", error=str(exc))
            logger.opt(exception=exc).debug("file_processing_traceback")
            return ProcessingOutcome(
                file_name=file_name,
                success=False,
                error=str(exc),
                dry_run=options.dry_run,
            )
        logger.info(
            "file_completed",
            written=sorted(outcome.written),
            skipped=outcome.skipped,
            dry_run=outcome.dry_run,
        )
        return outcome


def process_images(
    image_files: Sequence[Path],
    config: ExifCraftConfig,
    *,
    generator: ResponseGenerator,
    tool: MetadataTool,
    dry_run: bool = False,
    fail_on_generation_error: bool = True,
    on_progress: ProgressCallback | None = None,
    cancel_event: threading.Event | None = None,
    image_loader: ImageLoader = prepare_image_bytes,
) -> RunSummary:
    """
    Process a batch of images sequentially, in the given order.

    Args:
        image_files: Ordered image paths; existence is re-checked for each file
        config: Validated configuration (tasks, base prompt, backups, default policy)
        generator: Provider strategy selected from the model config
        tool: Metadata process shared by the whole batch
        dry_run: Run the full decision path but report instead of writing
        fail_on_generation_error: Count a file as failed when all of its tasks raised
        on_progress: Called as ``(index, total, file_name)`` before each file
        cancel_event: When set, no further file is started; the current one completes
        image_loader: Turns an image into the bytes sent to the model

    Returns:
        RunSummary with one outcome per attempted file and the names of files not
        started because of cancellation.

    Raises:
        NoImagesFoundError: If image_files is empty. Nothing is touched in that case.

    """
    files = list(image_files)
    if not files:
        msg = "No supported image files found"
        raise NoImagesFoundError(msg)

    options = ProcessingOptions.from_config(
        config,
        dry_run=dry_run,
        fail_on_generation_error=fail_on_generation_error,
    )
    total = len(files)
    logger.info("batch_started", files=total, dry_run=dry_run, tasks=len(config.enabled_tasks))

    names = display_names(files)
    summary = RunSummary()
    for index, (image_path, file_name) in enumerate(zip(files, names, strict=True), start=1):
        if cancel_event is not None and cancel_event.is_set():
            summary.cancelled = names[index - 1 :]
            logger.warning("batch_cancelled", remaining=len(summary.cancelled))
            break

        if on_progress is not None:
            try:
                on_progress(index, total, file_name)
            except Exception as exc:  # noqa: BLE001
                logger.warning("progress_callback_failed", error=str(exc))

        logger.info("processing_file", file=file_name, index=f"{index}/{total}")
        summary.outcomes.append(
            process_image(
                image_path,
                config.tasks,
                generator=generator,
                tool=tool,
                options=options,
                image_loader=image_loader,
                file_name=file_name,
            ),
        )

    summary.log_summary()
    return summary
