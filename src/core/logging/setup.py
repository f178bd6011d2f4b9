"""Logging setup: console output plus rotating per-stage log files."""

import io
import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, List, Optional

from core.logging.context import set_log_context
from core.logging.filters import StageContextFilter
from core.logging.formatters import ConsoleFormatter, JSONFormatter

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5
DEFAULT_CONSOLE_LEVEL = logging.INFO
DEFAULT_FILE_LEVEL = logging.DEBUG

# Library loggers that are chatty at DEBUG/INFO
NOISY_LOGGERS = [
    "asyncio",
    "urllib3",
    "prometheus_client",
]

PLAIN_FILE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)


def get_log_file_path(
    log_dir: Path,
    domain: Optional[str] = None,
    stage: Optional[str] = None,
    instance_id: Optional[str] = None,
) -> Path:
    """
    Path of a log file under ``{log_dir}/[{domain}/]{YYYY-MM-DD}/``.

    The file name joins domain, stage and date, e.g.
    ``gallery_image-queue_20250115_p12345.log``. Without domain or stage
    the name falls back to ``pipeline_{date}``.
    """
    now = datetime.now()
    name_parts = [part for part in (domain, stage) if part] or ["pipeline"]
    name_parts.append(now.strftime("%Y%m%d"))
    if instance_id:
        name_parts.append(instance_id)
    filename = "_".join(name_parts) + ".log"

    folder = log_dir / domain if domain else log_dir
    return folder / now.strftime("%Y-%m-%d") / filename


def _file_formatter(json_format: bool) -> logging.Formatter:
    return JSONFormatter() if json_format else logging.Formatter(PLAIN_FILE_FORMAT)


def _console_handler(level: int) -> logging.Handler:
    stream = sys.stdout
    if sys.platform == "win32":
        # cp1252 consoles choke on non-ASCII object keys
        stream = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(ConsoleFormatter())
    return handler


def _rotating_handler(
    log_file: Path,
    level: int,
    formatter: logging.Formatter,
    max_bytes: int,
    backup_count: int,
    stage_filter: Optional[str] = None,
) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    if stage_filter:
        handler.addFilter(StageContextFilter(stage_filter))
    return handler


def _install(handlers: Iterable[logging.Handler], suppress_noisy: bool) -> None:
    root_logger = logging.getLogger()
    # Handlers filter by level; the root passes everything
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)

    if suppress_noisy:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)


def setup_logging(
    name: str = "gallery_pipeline",
    stage: Optional[str] = None,
    domain: Optional[str] = "gallery",
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    worker_id: Optional[str] = None,
    use_instance_id: bool = True,
) -> logging.Logger:
    """
    Single-stage logging: console plus one rotating file.

    Used when a process runs one stage on its own. Sets the domain, stage
    and worker id in log context so every record carries them.

    Returns:
        The logger called ``name``
    """
    set_log_context(domain=domain, stage=stage, worker_id=worker_id)

    instance_id = f"p{os.getpid()}" if use_instance_id else None
    log_file = get_log_file_path(
        log_dir or DEFAULT_LOG_DIR, domain=domain, stage=stage, instance_id=instance_id
    )
    _install(
        [
            _rotating_handler(
                log_file, file_level, _file_formatter(json_format), max_bytes, backup_count
            ),
            _console_handler(console_level),
        ],
        suppress_noisy,
    )

    logger = logging.getLogger(name)
    logger.debug(f"Logging initialized: file={log_file}, json={json_format}")
    return logger


def setup_multi_worker_logging(
    workers: List[str],
    domain: str = "gallery",
    log_dir: Optional[Path] = None,
    json_format: bool = True,
    console_level: int = DEFAULT_CONSOLE_LEVEL,
    file_level: int = DEFAULT_FILE_LEVEL,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    suppress_noisy: bool = True,
    use_instance_id: bool = True,
) -> logging.Logger:
    """
    Logging for a process hosting several worker stages.

    Each stage gets its own rotating file that only accepts records logged
    while that stage is set in log context. A combined ``pipeline`` file
    and the console receive everything:

        logs/gallery/2025-01-15/gallery_image-queue_20250115.log
        logs/gallery/2025-01-15/gallery_confirmation-stream_20250115.log
        logs/gallery/2025-01-15/gallery_pipeline_20250115.log

    Args:
        workers: Stage names, one file each
        domain: Pipeline domain used in paths and log context
        log_dir: Base directory (default: ./logs)
        json_format: JSON lines in files, plain text otherwise
        use_instance_id: Append the process id to file names
    """
    set_log_context(domain=domain)

    base_dir = log_dir or DEFAULT_LOG_DIR
    instance_id = f"p{os.getpid()}" if use_instance_id else None
    formatter = _file_formatter(json_format)

    def file_for(stage: str) -> Path:
        return get_log_file_path(base_dir, domain=domain, stage=stage, instance_id=instance_id)

    handlers: List[logging.Handler] = [_console_handler(console_level)]
    handlers.extend(
        _rotating_handler(
            file_for(worker), file_level, formatter, max_bytes, backup_count, stage_filter=worker
        )
        for worker in workers
    )
    handlers.append(
        _rotating_handler(file_for("pipeline"), file_level, formatter, max_bytes, backup_count)
    )
    _install(handlers, suppress_noisy)

    logger = logging.getLogger("gallery_pipeline")
    logger.debug(f"Multi-worker logging initialized: workers={workers}, domain={domain}")
    return logger
