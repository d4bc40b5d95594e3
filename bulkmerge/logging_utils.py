# bulkmerge/logging_utils.py
"""
Logging setup for merge jobs.

Jobs log to timestamped files like ``nightly_orders_YYYYMMDD_HHMMSS.log``; the
error log is only created once something is logged at ERROR, so its presence
alone tells an operator that a merge (or a staging cleanup) failed.
"""

import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from .defaults import settings

logger = logging.getLogger(__name__)

_error_handler: Optional['ErrorCountHandler'] = None
_main_log_path: Optional[str] = None
_error_log_path: Optional[str] = None


class ErrorCountHandler(logging.Handler):
    """Counts ERROR and CRITICAL records and opens the error log on the first one."""

    def __init__(self, error_log_path: Optional[str] = None, formatter: Optional[logging.Formatter] = None):
        super().__init__(level=logging.ERROR)
        self.error_count = 0
        self.error_log_path = error_log_path
        self.formatter = formatter
        self._error_file_handler: Optional[logging.FileHandler] = None

    def emit(self, record: logging.LogRecord) -> None:
        if record.levelno < logging.ERROR:
            return
        self.error_count += 1
        if self.error_log_path and self._error_file_handler is None:
            try:
                handler = logging.FileHandler(self.error_log_path, encoding='utf-8')
            except OSError as e:
                logger.warning(f"Failed to create error log file: {e}")
                self.error_log_path = None
                return
            handler.setLevel(logging.ERROR)
            if self.formatter:
                handler.setFormatter(self.formatter)
            logging.getLogger().addHandler(handler)
            self._error_file_handler = handler
            # the new handler missed the record that triggered it
            handler.handle(record)

    def close(self) -> None:
        if self._error_file_handler is not None:
            self._error_file_handler.close()
        super().close()


def _option(name: str, value, default):
    """Explicit argument, else ``settings['logging'][name]``, else ``default``."""
    if value is not None:
        return value
    return settings.get('logging', {}).get(name, default)


def _log_file_names(log_dir: Path, script_name: str, filename_format: str,
                    split_errors: bool) -> Tuple[Path, Optional[Path]]:
    stem = f"{script_name}_{datetime.now().strftime(filename_format)}" if filename_format else script_name
    error_file = log_dir / f"{stem}_error.log" if split_errors else None
    return log_dir / f"{stem}.log", error_file


def _reset_root(level: int) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    return root


def setup_logging(
    script_name: Optional[str] = None,
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    split_errors: Optional[bool] = None,
    console: Optional[bool] = None
) -> Tuple[str, Optional[str]]:
    """
    Configure root logging for a merge job.

    Unset arguments come from ``settings['logging']`` (overridable in
    ``bulkmerge.yml``).

    Args:
        script_name: Base name for log files (defaults to the running script's name)
        log_dir: Directory for log files
        level: DEBUG, INFO, WARNING or ERROR; DEBUG includes generated SQL
        split_errors: Write ERROR records to a separate ``_error.log`` as well
        console: Also log to stdout

    Returns:
        ``(main log path, error log path)``; the second is None when errors are not split

    Example
    -------
    ::

        import bulkmerge

        bulkmerge.setup_logging('nightly_orders', level='DEBUG')
    """
    global _error_handler, _main_log_path, _error_log_path

    script_name = script_name or Path(sys.argv[0]).stem or 'bulkmerge'
    log_level = getattr(logging, _option('level', level, 'INFO').upper())
    formatter = logging.Formatter(
        _option('format', None, '%(asctime)s [%(levelname)s] %(name)s: %(message)s'),
        datefmt=_option('timestamp_format', None, '%Y-%m-%d %H:%M:%S'),
    )

    directory = Path(log_dir or _option('directory', None, './logs'))
    directory.mkdir(parents=True, exist_ok=True)
    log_file, error_file = _log_file_names(
        directory, script_name,
        _option('filename_format', None, '%Y%m%d_%H%M%S'),
        _option('split_errors', split_errors, True),
    )

    root = _reset_root(log_level)
    _error_handler = ErrorCountHandler(str(error_file) if error_file else None, formatter=formatter)

    main_handler = logging.FileHandler(log_file, encoding='utf-8')
    main_handler.setLevel(logging.DEBUG)
    handlers = [_error_handler, main_handler]
    if _option('console', console, True):
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(log_level)
        handlers.append(stdout_handler)
    for handler in handlers:
        if handler is not _error_handler:
            handler.setFormatter(formatter)
        root.addHandler(handler)

    _main_log_path = str(log_file)
    _error_log_path = str(error_file) if error_file else None
    logger.info(f"Logging to {_main_log_path}")
    return _main_log_path, _error_log_path


def errors_logged() -> Optional[str]:
    """
    Path of the log holding this run's errors, or None if nothing was logged at ERROR.

    Example
    -------
    ::

        bulkmerge.setup_logging('nightly_orders')
        bulk_merge(db, registry, Order, orders, raise_error=False)
        error_log = bulkmerge.errors_logged()
        if error_log:
            notify_operator(error_log)
    """
    if _error_handler is None:
        logger.warning("errors_logged() has nothing to report before setup_logging()")
        return None
    if not _error_handler.error_count:
        return None
    return _error_log_path or _main_log_path


def cleanup_old_logs(
    log_dir: Optional[str] = None,
    retention_days: Optional[int] = None,
    pattern: str = "*.log",
    dry_run: bool = False
) -> List[str]:
    """
    Remove log files older than the retention period.

    Args:
        log_dir: Directory to clean (defaults to ``settings['logging']['directory']``)
        retention_days: Keep logs newer than this (defaults to ``settings['logging']['retention_days']``)
        pattern: Glob pattern for log files
        dry_run: Only report what would be deleted

    Returns:
        List of deleted (or would-be-deleted) file paths
    """
    directory = Path(log_dir or _option('directory', None, './logs'))
    if not directory.is_dir():
        logger.warning(f"No log directory at {directory}")
        return []

    oldest_kept = datetime.now() - timedelta(days=retention_days or _option('retention_days', None, 30))
    expired = [path for path in sorted(directory.glob(pattern))
               if path.is_file() and datetime.fromtimestamp(path.stat().st_mtime) < oldest_kept]

    removed = []
    for path in expired:
        if dry_run:
            logger.info(f"Dry run, keeping {path}")
        else:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove {path}: {e}")
                continue
        removed.append(str(path))

    if removed and not dry_run:
        logger.info(f"Removed {len(removed)} log files older than {oldest_kept:%Y-%m-%d}")
    return removed
