"""
Logging configuration for the Sentinel agent.

Implements structured logging with:
- Console output plus daily rotating log files
- Gzip compression of rotated files after a few days
- A separate error log
- An activity logger for tick-level events

"""

import sys
import gzip
import shutil
import logging
from pathlib import Path
from datetime import datetime, timedelta
from typing import Optional
from logging.handlers import TimedRotatingFileHandler


class CompressingTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    TimedRotatingFileHandler that gzips rotated files older than
    ``compress_after_days``.
    """

    def __init__(self, *args, compress_after_days: int = 7, **kwargs):
        super().__init__(*args, **kwargs)
        self.compress_after_days = compress_after_days

    def doRollover(self):
        super().doRollover()
        self._compress_old_logs()

    def _compress_old_logs(self):
        if not self.baseFilename:
            return

        log_dir = Path(self.baseFilename).parent
        log_basename = Path(self.baseFilename).name
        cutoff_date = datetime.now() - timedelta(days=self.compress_after_days)

        for log_file in log_dir.glob(f"{log_basename}.*"):
            if log_file.suffix == '.gz':
                continue
            try:
                file_mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
                if file_mtime < cutoff_date:
                    self._compress_file(log_file)
            except OSError as e:
                print(f"Error compressing {log_file}: {e}", file=sys.stderr)

    def _compress_file(self, file_path: Path):
        compressed_path = file_path.with_suffix(file_path.suffix + '.gz')
        try:
            with open(file_path, 'rb') as f_in:
                with gzip.open(compressed_path, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            file_path.unlink()
        except OSError as e:
            print(f"Failed to compress {file_path}: {e}", file=sys.stderr)
            if compressed_path.exists():
                compressed_path.unlink()


class StructuredFormatter(logging.Formatter):
    """
    Formatter that adds the component name and any ``extra_context``
    key/value pairs to the message.
    """

    def format(self, record: logging.LogRecord) -> str:
        component = record.name.split('.')[-1] if '.' in record.name else record.name
        record.component = component

        formatted = super().format(record)

        if hasattr(record, 'extra_context'):
            context_str = ' | '.join(f"{k}={v}" for k, v in record.extra_context.items())
            formatted += f" | {context_str}"

        return formatted


def setup_logging(
    log_dir: str = "logs",
    log_level: str = "INFO",
    console_level: str = "INFO",
    enable_compression: bool = True,
    compress_after_days: int = 7,
    retention_days: int = 30,
) -> logging.Logger:
    """
    Set up logging for the agent.

    Args:
        log_dir: Directory for log files
        log_level: File logging level (DEBUG, INFO, WARNING, ERROR)
        console_level: Console logging level
        enable_compression: Whether to compress old log files
        compress_after_days: Days after which to compress logs
        retention_days: Days to retain log files

    Returns:
        Configured root logger
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    detailed_formatter = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(component)-18s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_formatter = StructuredFormatter(
        fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level.upper(), logging.INFO))
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    log_file = log_path / "sentinel.log"
    if enable_compression:
        file_handler = CompressingTimedRotatingFileHandler(
            filename=str(log_file),
            when='midnight',
            interval=1,
            backupCount=retention_days,
            compress_after_days=compress_after_days,
            encoding='utf-8',
        )
    else:
        file_handler = TimedRotatingFileHandler(
            filename=str(log_file),
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8',
        )
    file_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    file_handler.setFormatter(detailed_formatter)
    file_handler.suffix = "%Y-%m-%d"
    root_logger.addHandler(file_handler)

    error_handler = TimedRotatingFileHandler(
        filename=str(log_path / "sentinel_errors.log"),
        when='midnight',
        interval=1,
        backupCount=retention_days,
        encoding='utf-8',
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    error_handler.suffix = "%Y-%m-%d"
    root_logger.addHandler(error_handler)

    # Third-party HTTP clients are chatty at DEBUG
    for noisy in ("httpx", "httpcore", "aiohttp", "groq"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info("=" * 80)
    root_logger.info("Sentinel Agent Logging Initialized")
    root_logger.info(f"Log directory: {log_path.absolute()}")
    root_logger.info(f"Log level: {log_level} (console: {console_level})")
    root_logger.info("=" * 80)

    return root_logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **context
):
    """
    Log a message with additional key/value context.

    The context is rendered by StructuredFormatter as ``key=value`` pairs.
    """
    extra = {'extra_context': context} if context else {}
    logger.log(level, message, extra=extra)


class ActivityLogger:
    """
    Logger for tick-level agent activity.

    Complements the persisted audit trail with a human-readable stream in
    the log files.
    """

    def __init__(self):
        self.logger = logging.getLogger('sentinel.activity')

    def log_tick(self, tick: int, balance: float, action: str, duration: float):
        log_with_context(
            self.logger,
            logging.INFO,
            f"Tick {tick} completed",
            balance=f"{balance:.9f}",
            action=action,
            duration_seconds=f"{duration:.2f}",
        )

    def log_scan(self, scanners: int, failed: int, opportunities: int, duration: float):
        log_with_context(
            self.logger,
            logging.INFO if failed == 0 else logging.WARNING,
            "Scan completed",
            scanners=scanners,
            failed=failed,
            opportunities=opportunities,
            duration_seconds=f"{duration:.2f}",
        )

    def log_decision(self, action: str, advice: str, valid: bool):
        log_with_context(
            self.logger,
            logging.INFO if valid else logging.WARNING,
            f"Strategy decision: {action}",
            action=action,
            valid=valid,
            advice=advice[:120],
        )

    def log_execution(
        self,
        protocol: str,
        status: str,
        signature: Optional[str] = None,
        error: Optional[str] = None
    ):
        context = {'protocol': protocol, 'status': status}
        if signature:
            context['tx'] = signature
        if error:
            context['error'] = error

        level = logging.ERROR if status == "failed" else logging.INFO
        log_with_context(self.logger, level, f"Execution {status}: {protocol}", **context)

    def log_error(
        self,
        component: str,
        error_type: str,
        error_message: str,
        **context
    ):
        context.update({
            'component': component,
            'error_type': error_type,
        })
        log_with_context(self.logger, logging.ERROR, error_message, **context)


_activity_logger: Optional[ActivityLogger] = None


def get_activity_logger() -> ActivityLogger:
    """Get the global activity logger instance."""
    global _activity_logger
    if _activity_logger is None:
        _activity_logger = ActivityLogger()
    return _activity_logger
