"""Structured logging for feed runs.

Console output stays human-readable. The JSON files carry one object per line,
with the run identity (run, retailer, feed, stage) grouped under ``run`` so a
single feed run can be followed across stages.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from reconciler.config import settings

RUN_FIELDS = ("run_id", "retailer_id", "feed_id", "stage")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that adds level, source and the run identity block."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        run = {key: log_record.pop(key) for key in RUN_FIELDS if key in log_record}
        if run:
            log_record['run'] = run


class RunContextFormatter(logging.Formatter):
    """Console formatter that prefixes messages with ``[run_id/stage]``."""

    def format(self, record):
        message = super().format(record)
        run_id = getattr(record, "run_id", None)
        if not run_id:
            return message
        stage = getattr(record, "stage", None)
        tag = f"{run_id}/{stage}" if stage else run_id
        return f"[{tag}] {message}"


def setup_logging(base_dir: str | Path | None = None, to_file: Optional[bool] = None):
    """Configure root logging.

    Args:
        base_dir: Directory that receives ``logs/``. Defaults to settings.log_dir,
                  then the current directory.
        to_file: Write JSON log files. Defaults to settings.log_to_file.
    """
    if to_file is None:
        to_file = settings.log_to_file

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(RunContextFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    root_logger.addHandler(console_handler)

    if not to_file:
        return root_logger

    base = base_dir or settings.log_dir or Path.cwd()
    logs_dir = Path(base) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    json_formatter = CustomJsonFormatter("%(message)s")
    for filename, level in (("pipeline.log", logging.DEBUG), ("error.log", logging.ERROR)):
        handler = logging.FileHandler(logs_dir / filename)
        handler.setLevel(level)
        handler.setFormatter(json_formatter)
        root_logger.addHandler(handler)

    return root_logger


class RunLogger(logging.LoggerAdapter):
    """Adapter that attaches its context to every record as extra fields."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def bind(self, **context) -> "RunLogger":
        """Child adapter with additional context, e.g. the current stage."""
        return RunLogger(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> RunLogger:
    """
    Get a logger carrying run context.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., run_id='r1', retailer_id='acme')

    Returns:
        RunLogger with context
    """
    return RunLogger(logging.getLogger(name), context)
