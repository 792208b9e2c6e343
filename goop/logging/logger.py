"""
Logging configuration and utilities.
"""

import inspect
import json
import logging
import socket
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from elasticsearch import Elasticsearch

from goop.config import Config


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"


class CloudLoggingJSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs JSON for Cloud Logging when message contains structured data.
    Cloud Logging automatically parses JSON from stdout if the line starts with '{'.
    """

    def format(self, record):
        message = record.getMessage()
        if message.strip().startswith("{"):
            try:
                parsed = json.loads(message)
                log_entry = {
                    "severity": record.levelname,
                    "message": parsed.get("message", str(message)),
                    "timestamp": _utc_timestamp(),
                    "service": record.name,
                }
                for key, value in parsed.items():
                    if key != "message":
                        log_entry[key] = value
                if record.exc_info:
                    log_entry["exception"] = self.formatException(record.exc_info)
                return json.dumps(log_entry)
            except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
                # Not a structured payload after all
                pass

        return super().format(record)


class ElasticsearchHandler(logging.Handler):
    """Custom handler for logging to Elasticsearch."""

    def __init__(self, es_client, index_pattern="logs-{date}"):
        super().__init__()
        self.es_client = es_client
        self.index_pattern = index_pattern
        self.hostname = socket.gethostname()
        self._processing = False  # Flag to prevent recursion

    def build_document(self, record: logging.LogRecord) -> Dict[str, Any]:
        """Build the Elasticsearch document for a log record.

        Structured (JSON) messages keep all of their fields as top-level
        document fields; plain messages are stored under ``message``.
        """
        raw_message = record.getMessage()
        parsed_json = None
        if raw_message.strip().startswith("{"):
            try:
                parsed_json = json.loads(raw_message)
            except (json.JSONDecodeError, ValueError, TypeError):
                pass

        if isinstance(parsed_json, dict):
            doc = dict(parsed_json)
        else:
            doc = {"message": self.format(record)}

        if not doc.get("timestamp"):
            doc["timestamp"] = _utc_timestamp()
        doc.setdefault("level", record.levelname)
        doc.setdefault("severity", record.levelname)
        if not doc.get("service"):
            doc["service"] = record.name
        doc["hostname"] = self.hostname
        return doc

    def emit(self, record):
        """Emit a log record to Elasticsearch."""
        if self._processing:
            return

        self._processing = True
        try:
            date_str = datetime.now(timezone.utc).strftime("%Y.%m.%d")
            index_name = self.index_pattern.format(date=date_str)
            self.es_client.index(index=index_name, document=self.build_document(record))
        except Exception as e:
            # Don't break logging if Elasticsearch is unavailable; print to
            # stderr instead of logging to avoid recursion
            print(f"[ELASTICSEARCH_HANDLER] Error indexing log: {e}", file=sys.stderr)
        finally:
            self._processing = False


def _add_elasticsearch_handler(
    root_logger: logging.Logger, formatter: logging.Formatter, level: int
) -> None:
    """Attach an ElasticsearchHandler to the root logger if configured and reachable."""
    if not Config.ELASTICSEARCH_HOST or Config.DISABLE_ELASTICSEARCH:
        return
    if any(isinstance(h, ElasticsearchHandler) for h in root_logger.handlers):
        return

    try:
        es_client = Elasticsearch(
            [f"http://{Config.ELASTICSEARCH_HOST}:{Config.ELASTICSEARCH_PORT}"],
            verify_certs=False,
            ssl_show_warn=False,
            request_timeout=2,
            max_retries=0,
        )
        # Quick health check - if this fails, don't add the handler
        if not es_client.ping(request_timeout=1):
            print("[ELASTICSEARCH] Ping failed, handler not added", file=sys.stderr)
            return
        es_handler = ElasticsearchHandler(es_client)
        es_handler.setLevel(level)
        es_handler.setFormatter(formatter)
        root_logger.addHandler(es_handler)
    except Exception as e:
        print(f"[ELASTICSEARCH] Logging not available: {e}", file=sys.stderr)


def setup_logger(
    service_name: Optional[str] = None, log_level: Optional[str] = None
) -> logging.Logger:
    """Setup and configure logger for a service."""

    name = service_name or Config.SERVICE_NAME
    level_name = log_level or Config.LOG_LEVEL
    level = getattr(logging, level_name.upper(), logging.INFO)

    # Configure root logger to ensure all loggers inherit handlers
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = CloudLoggingJSONFormatter(
        fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Host applications may have already added a console handler
    has_console_handler = any(
        isinstance(h, logging.StreamHandler) for h in root_logger.handlers
    )
    if not has_console_handler:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    _add_elasticsearch_handler(root_logger, formatter, level)

    return logging.getLogger(name)


_configured = False


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name, configuring the root logger on first use."""
    global _configured

    if not _configured:
        setup_logger()
        _configured = True
    return logging.getLogger(name)


class StructuredLogger:
    """
    Wrapper around logger that adds structured fields for Google Cloud Logging.
    This allows filtering by fields like topic or subscription in Cloud Logging Explorer.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _format_structured_message(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        **kwargs,
    ) -> str:
        """
        Format message with structured fields for Cloud Logging.

        Without structured fields the message is returned unchanged. Otherwise
        a JSON object is returned, which CloudLoggingJSONFormatter turns into a
        proper Cloud Logging entry. correlation_id is also prepended to the
        readable message.
        """
        formatted_message = message
        if correlation_id:
            formatted_message = f"[{correlation_id}] {message}"

        fields = {key: value for key, value in kwargs.items() if value is not None}
        if correlation_id or fields:
            structured_data: Dict[str, Any] = {"message": formatted_message}
            if correlation_id:
                structured_data["correlation_id"] = correlation_id
            structured_data.update(fields)
            return json.dumps(structured_data, default=str)
        return formatted_message

    def debug(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        self.logger.debug(self._format_structured_message(message, correlation_id, **kwargs))

    def info(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        self.logger.info(self._format_structured_message(message, correlation_id, **kwargs))

    def warning(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        self.logger.warning(
            self._format_structured_message(message, correlation_id, **kwargs)
        )

    def error(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        exc_info: bool = False,
        **kwargs,
    ):
        self.logger.error(
            self._format_structured_message(message, correlation_id, **kwargs),
            exc_info=exc_info,
        )

    def critical(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        self.logger.critical(
            self._format_structured_message(message, correlation_id, **kwargs)
        )

    def __getattr__(self, name: str):
        """Delegate other attributes to the underlying logger."""
        return getattr(self.logger, name)


def get_structured_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger.

    Usage:
        logger = get_structured_logger(__name__)
        logger.info("Published message", topic="orders", message_id="123")

    In Cloud Logging Explorer, you can then filter by:
        jsonPayload.topic="orders"
    """
    return StructuredLogger(get_logger(name))


def _caller_module(logger_name: Optional[str]) -> str:
    if logger_name is not None:
        return logger_name
    # Two frames up: the log_* helper, then its caller
    frame = inspect.currentframe()
    try:
        return frame.f_back.f_back.f_globals.get("__name__", "root")
    finally:
        del frame


def log_debug(
    message: str, correlation_id: str = "", logger_name: Optional[str] = None, **kwargs
):
    """Log a debug message with optional structured fields (see log_info)."""
    get_structured_logger(_caller_module(logger_name)).debug(
        message, correlation_id=correlation_id, **kwargs
    )


def log_info(
    message: str, correlation_id: str = "", logger_name: Optional[str] = None, **kwargs
):
    """
    Log an info message with correlation_id and structured fields.

    Args:
        message: The log message (structured values such as topic names should
                 go in kwargs rather than only in the string)
        correlation_id: Correlation_id for request tracing (can be empty string)
        logger_name: Optional logger name (defaults to caller's module name)
        **kwargs: Additional structured fields (e.g., topic, subscription, message_id)
    """
    get_structured_logger(_caller_module(logger_name)).info(
        message, correlation_id=correlation_id, **kwargs
    )


def log_warning(
    message: str, correlation_id: str = "", logger_name: Optional[str] = None, **kwargs
):
    """Log a warning message with optional structured fields (see log_info)."""
    get_structured_logger(_caller_module(logger_name)).warning(
        message, correlation_id=correlation_id, **kwargs
    )


def log_error(
    message: str,
    correlation_id: str = "",
    logger_name: Optional[str] = None,
    exc_info: bool = False,
    **kwargs,
):
    """Log an error message with optional structured fields and traceback."""
    get_structured_logger(_caller_module(logger_name)).error(
        message, correlation_id=correlation_id, exc_info=exc_info, **kwargs
    )
