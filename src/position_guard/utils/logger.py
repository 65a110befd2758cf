"""
Logging Utilities

Provides structured logging with:
- JSON formatting for production
- Sweep timing
- Risk/exit/reduction event records
"""

import logging
import json
import sys
import time
from datetime import datetime
from typing import Optional
from pathlib import Path
import threading
from contextlib import contextmanager


_EXTRA_FIELDS = (
    'correlation_id',
    'position_id',
    'domain',
    'symbol',
    'exit_kind',
    'risk_level',
    'recommended_action',
    'margin_ratio',
    'reduce_percent',
    'success',
    'execution_time',
    'alert_type',
    'severity',
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_entry[name] = getattr(record, name)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PerformanceLogger:
    """Logger for tracking operation durations."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self._start_times = {}
        self._lock = threading.Lock()

    @contextmanager
    def timer(self, operation: str, **context):
        """Context manager for timing operations."""
        start_time = time.time()
        operation_id = f"{operation}_{threading.get_ident()}_{start_time}"

        try:
            with self._lock:
                self._start_times[operation_id] = start_time
            yield
        finally:
            execution_time = time.time() - start_time

            with self._lock:
                self._start_times.pop(operation_id, None)

            extra = {'execution_time': execution_time, **context}
            self.logger.debug(f"Operation completed: {operation} ({execution_time:.3f}s)", extra=extra)


class RiskLogger:
    """Specialized logger for risk and exit operations."""

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def exit_event(self, position_id: str, domain: str, exit_kind: str, reason: str, success: bool, **context):
        """Log an executed exit."""
        extra = {
            'position_id': position_id,
            'domain': domain,
            'exit_kind': exit_kind,
            'success': success,
            **context
        }
        if success:
            self.logger.info(f"Exit {exit_kind} executed for {position_id}: {reason}", extra=extra)
        else:
            self.logger.error(f"Exit {exit_kind} failed for {position_id}: {reason}", extra=extra)

    def reduction_event(self, position_id: str, domain: str, reduce_percent: float, reason: str, **context):
        """Log an emergency reduction."""
        extra = {
            'position_id': position_id,
            'domain': domain,
            'reduce_percent': reduce_percent,
            **context
        }
        self.logger.warning(
            f"[EMERGENCY] Reducing {domain} position {position_id} by {reduce_percent * 100:.0f}% | Reason: {reason}",
            extra=extra
        )

    def risk_alert(self, alert_type: str, severity: str, message: str, **context):
        """Log risk management alerts."""
        extra = {
            'alert_type': alert_type,
            'severity': severity,
            **context
        }
        if severity.lower() in ['high', 'critical']:
            self.logger.error(f"Risk Alert [{alert_type}]: {message}", extra=extra)
        else:
            self.logger.warning(f"Risk Alert [{alert_type}]: {message}", extra=extra)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = True,
    correlation_id: Optional[str] = None
) -> logging.Logger:
    """
    Setup logging configuration.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path
        json_format: Use JSON formatting
        correlation_id: Optional correlation ID stamped on every record

    Returns:
        Configured root logger
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if correlation_id:
        old_factory = logging.getLogRecordFactory()

        def record_factory(*args, **kwargs):
            record = old_factory(*args, **kwargs)
            record.correlation_id = correlation_id
            return record

        logging.setLogRecordFactory(record_factory)

    return logger


def get_risk_logger(name: str) -> RiskLogger:
    """Get a risk-specific logger instance."""
    return RiskLogger(name)
