#!/usr/bin/env python3
"""
ExifCraft: CLI app that writes AI-generated text into image metadata tags.

Each configured task sends the image and its prompt to a vision-language model and
binds the answer to one or more tags (e.g. ImageDescription, XMP-dc:Title, Keywords).
A per-tag overwrite policy decides whether an existing value may be replaced:
"allow" always writes, "avoid" only fills tags that are empty.

Requirements:
 - Exiftool installed and available in PATH.
 - An Ollama or OpenAI-compatible server with a vision-language model
   (or the "mock" provider for trial runs).

"""
# ruff: noqa: PLR0913

import atexit
import signal
import sys
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType
from typing import Annotated, Literal

from cyclopts import App, Parameter, validators
from loguru import logger

from exifcraft.ai_client import ResponseGenerator, create_generator
from exifcraft.config import ExifCraftConfig, load_config
from exifcraft.errors import ExifCraftError, NoImagesFoundError
from exifcraft.formats import collect_image_files
from exifcraft.metadata import MetadataTool
from exifcraft.processor import ProgressCallback, RunSummary, process_images


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

__version__ = "0.1.0"
app = App(
    name="exifcraft",
    version=__version__,
)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-exifcraft.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def install_lifecycle(tool: MetadataTool, cancel_event: threading.Event) -> Callable[[], None]:
    """
    Tie the ExifTool process to the program lifetime.

    The first SIGINT sets ``cancel_event`` so the current file finishes and no new file
    starts; a second SIGINT or a SIGTERM shuts ExifTool down and aborts.

    Returns:
        A callable that restores the previous signal handlers and drops the exit hook.

    """
    atexit.register(tool.shutdown)

    def _on_interrupt(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
        if cancel_event.is_set():
            logger.warning("second_interrupt_aborting")
            tool.shutdown()
            raise KeyboardInterrupt
        logger.warning("interrupt_received_finishing_current_file")
        cancel_event.set()

    def _on_terminate(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
        logger.warning("terminate_received")
        tool.shutdown()
        raise SystemExit(128 + signum)

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, _on_interrupt),
        signal.SIGTERM: signal.signal(signal.SIGTERM, _on_terminate),
    }

    def restore() -> None:
        atexit.unregister(tool.shutdown)
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    return restore


def run_job(
    config: ExifCraftConfig,
    *,
    directory: Path | None,
    files: list[Path] | None,
    tool: MetadataTool,
    dry_run: bool = False,
    fail_on_generation_error: bool = True,
    cancel_event: threading.Event | None = None,
    on_progress: ProgressCallback | None = None,
    generator: ResponseGenerator | None = None,
) -> RunSummary:
    """
    Resolve the inputs, pick the provider and process the batch.

    Raises:
        InputError: If no directory or files were given, or the directory is invalid.
        NoImagesFoundError: If no supported image file was found.

    """
    image_files = collect_image_files(directory, files, config.image_formats)
    if not image_files:
        logger.error(
            "no_image_files_found",
            directory=str(directory) if directory else None,
            files=[str(p) for p in files or []],
            extensions=config.image_formats,
        )
        msg = "No supported image files found"
        raise NoImagesFoundError(msg)
    logger.info("image_files_discovered", count=len(image_files))
    logger.debug("image_files", files=[str(p) for p in image_files])

    generator = generator or create_generator(config.ai_model)
    try:
        return process_images(
            image_files,
            config,
            generator=generator,
            tool=tool,
            dry_run=dry_run,
            fail_on_generation_error=fail_on_generation_error,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
    finally:
        generator.close()


@app.default
def run(
    directory: Annotated[
        Path | None,
        Parameter(
            name=("--directory", "-d"),
            validator=validators.Path(exists=True, file_okay=False),
            help="Directory of images to process (not recursive)",
        ),
    ] = None,
    files: Annotated[
        list[Path] | None,
        Parameter(
            name=("--files", "-f"),
            consume_multiple=True,
            help="One or more image files to process",
        ),
    ] = None,
    *,
    config_path: Annotated[
        Path,
        Parameter(
            name=("--config", "-c"),
            help="Configuration file (.json or .toml)",
        ),
    ] = Path("config.json"),
    verbose: Annotated[
        bool,
        Parameter(
            name=("--verbose", "-v"),
            negative="",
            help="Show debug output, including full tracebacks for failed files",
        ),
    ] = False,
    dry_run: Annotated[
        bool,
        Parameter(
            name=("--dry-run",),
            negative="",
            help="Generate and reconcile tags but only report what would be written",
        ),
    ] = False,
    allow_empty_results: Annotated[
        bool,
        Parameter(
            name=("--allow-empty-results",),
            negative="",
            help="Count a file as completed even when every task failed to generate",
        ),
    ] = False,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel | None,
        Parameter(
            name="--console-log-level",
            help="Log level for console (default INFO, DEBUG with --verbose; 'OFF' disables)",
        ),
    ] = None,
) -> None:
    """
    Generate metadata text with AI and write it into image tags.

    Inputs:
    - --directory/-d: every supported image directly inside the directory.
    - --files/-f: explicit image files, filtered by the configured formats.

    Behavior:
    - Runs each enabled task of the configuration against each image, in path order.
    - Tags with the "avoid" policy are only written when currently empty.
    - --dry-run goes through the same decisions but writes nothing.

    Exit status: 1 if the configuration is missing/invalid or no image is found;
    otherwise 0, with per-file failures listed in the summary.

    Examples:
        exifcraft -d ./photos -c config.json
        exifcraft -f a.jpg b.nef --dry-run -v

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level or ("DEBUG" if verbose else "INFO"),
        log_folder=log_folder,
    )

    try:
        config = load_config(config_path.resolve())
    except ExifCraftError as exc:
        logger.error("config_load_failed", error=str(exc), path=str(config_path))
        raise SystemExit(1) from exc

    if config.verbose and not verbose and console_log_level is None:
        verbose = True
        setup_logging(
            file_log_level=file_log_level,
            console_log_level="DEBUG",
            log_folder=log_folder,
        )
    dry_run = dry_run or bool(config.dry_run)

    logger.info(
        "starting_exifcraft",
        directory=str(directory) if directory else None,
        files=[str(p) for p in files or []],
        config=str(config_path),
        dry_run=dry_run,
        verbose=verbose,
    )
    logger.debug("configuration", config=config.redacted())

    tool = MetadataTool()
    cancel_event = threading.Event()
    restore_signals = install_lifecycle(tool, cancel_event)
    try:
        run_job(
            config,
            directory=directory,
            files=files,
            tool=tool,
            dry_run=dry_run,
            fail_on_generation_error=not allow_empty_results,
            cancel_event=cancel_event,
        )
    except ExifCraftError as exc:
        logger.error("program_execution_failed", error=str(exc))
        logger.opt(exception=exc).debug("program_execution_traceback")
        raise SystemExit(1) from exc
    finally:
        tool.shutdown()
        restore_signals()


if __name__ == "__main__":
    app()
