"""
Logging configuration for the selector healing service.

This module provides structured logging configuration with component
loggers for the healing engine, the run orchestrator and persistence.
"""

import logging
import logging.handlers
import json
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import asdict, is_dataclass


COMPONENTS = ("engine", "orchestrator", "policy", "repository", "api", "analyzer")


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging."""

    EXTRA_FIELDS = (
        "run_id", "test_name", "operation", "phase", "duration",
        "success", "error_code", "metadata",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(log_data, default=self._json_serializer)

    def _json_serializer(self, obj):
        """Custom JSON serializer for complex objects."""
        if is_dataclass(obj):
            return asdict(obj)
        elif isinstance(obj, Enum):
            return obj.value
        elif hasattr(obj, 'isoformat'):
            return obj.isoformat()
        else:
            return str(obj)


class HealingLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter for healing operations with contextual information."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Merge the adapter context into each record's extras."""
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs

    def log_operation_start(self, operation: str, **metadata):
        """Log the start of a healing operation."""
        self.info(f"Starting {operation}", extra={
            'operation': operation,
            'phase': 'start',
            'metadata': metadata
        })

    def log_operation_success(self, operation: str, duration: float, **metadata):
        """Log successful completion of a healing operation."""
        self.info(f"Completed {operation} successfully", extra={
            'operation': operation,
            'phase': 'complete',
            'success': True,
            'duration': duration,
            'metadata': metadata
        })

    def log_operation_failure(self, operation: str, duration: float, error: str,
                              error_code: Optional[str] = None, **metadata):
        """Log failure of a healing operation."""
        self.error(f"Failed {operation}: {error}", extra={
            'operation': operation,
            'phase': 'complete',
            'success': False,
            'duration': duration,
            'error_code': error_code,
            'metadata': metadata
        })


def setup_healing_logging(log_level: str = "INFO", log_dir: str = "logs",
                          structured: bool = True) -> Dict[str, logging.Logger]:
    """
    Set up logging for the healing service.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory to store log files
        structured: Also write JSON log files next to the console output

    Returns:
        Dictionary of configured component loggers
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    loggers = {component: logging.getLogger(f"healing.{component}") for component in COMPONENTS}

    if not structured:
        return loggers

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    structured_formatter = StructuredFormatter()

    all_logs_handler = logging.handlers.RotatingFileHandler(
        log_path / "healing_all.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5
    )
    all_logs_handler.setFormatter(structured_formatter)
    all_logs_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(all_logs_handler)

    operations_handler = logging.handlers.RotatingFileHandler(
        log_path / "healing_operations.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10
    )
    operations_handler.setFormatter(structured_formatter)
    operations_handler.setLevel(logging.INFO)

    error_handler = logging.handlers.RotatingFileHandler(
        log_path / "healing_errors.log",
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=10
    )
    error_handler.setFormatter(structured_formatter)
    error_handler.setLevel(logging.ERROR)

    for component_logger in loggers.values():
        component_logger.addHandler(operations_handler)
        component_logger.addHandler(error_handler)

    return loggers


def get_healing_logger(component: str, run_id: Optional[str] = None,
                       test_name: Optional[str] = None) -> HealingLoggerAdapter:
    """
    Get a healing logger adapter with contextual information.

    Args:
        component: Component name (engine, orchestrator, ...)
        run_id: Optional test run ID
        test_name: Optional test name

    Returns:
        HealingLoggerAdapter instance
    """
    logger = logging.getLogger(f"healing.{component}")

    extra = {}
    if run_id:
        extra['run_id'] = run_id
    if test_name:
        extra['test_name'] = test_name

    return HealingLoggerAdapter(logger, extra)
