"""
Logging setup: text and JSON handlers, and log record filters that inject
request, user and workflow context.
"""
import contextlib
import contextvars
import functools
import logging
import logging.config
import os
import sys
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Union

import flask
import pythonjsonlogger.jsonlogger

from geoengine_driver.utils import generate_unique_id

if TYPE_CHECKING:
    from geoengine_driver.config import GeoEngineBackendConfig

_log = logging.getLogger(__name__)

LOGGING_CONTEXT_FLASK = "flask"
LOGGING_CONTEXT_CLI = "cli"

LOG_FORMAT_BASIC = "[%(asctime)s] %(process)s %(levelname)s in %(name)s:%(lineno)s %(message)s"

# JsonFormatter lists expected fields through a fake `format` string.
# `extra` fields (e.g. "workflow_id") are included even when not listed.
JSON_LOGGER_DEFAULT_FORMAT = "%(message)s %(levelname)s %(name)s %(created)s %(filename)s %(lineno)s %(process)s"


# Text format on stderr
LOG_HANDLER_STDERR_BASIC = "basic"
# Text format on the WSGI error stream (Flask style)
LOG_HANDLER_STDERR_WSGI = "wsgi"
# JSON records on stderr
LOG_HANDLER_STDERR_JSON = "stderr_json"
# JSON records in a rotating file
LOG_HANDLER_ROTATING_FILE_JSON = "rotating_file_json"

DEFAULT_LOG_FILE_PREFIX = "geo_engine"


def get_logging_config(
    *,
    root_handlers: Optional[List[str]] = None,
    loggers: Optional[Dict[str, dict]] = None,
    handler_default_level: str = "DEBUG",
    context: str = LOGGING_CONTEXT_FLASK,
    root_level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    log_file_prefix: str = DEFAULT_LOG_FILE_PREFIX,
    rotating_file_max_bytes: int = 10 * 1024 * 1024,
    rotating_file_backup_count: int = 1,
) -> dict:
    """Construct logging config dict to be loaded with `logging.config.dictConfig`"""

    loggers = {
        "gunicorn": {"level": "INFO"},
        "werkzeug": {"level": "INFO"},
        "urllib3": {"level": "WARN"},
        **(loggers or {}),
    }

    json_filters = ["WorkflowIdLogging"]
    if context == LOGGING_CONTEXT_FLASK:
        json_filters = ["FlaskRequestCorrelationIdLogging", "FlaskUserIdLogging"] + json_filters

    if not log_file:
        log_file = Path(log_dir or os.environ.get("GEOENGINE_LOG_DIR", ".")) / f"{log_file_prefix}.log"

    handlers = {
        LOG_HANDLER_STDERR_BASIC: {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "level": handler_default_level,
            "formatter": "basic",
        },
        LOG_HANDLER_STDERR_WSGI: {
            "class": "logging.StreamHandler",
            "stream": "ext://flask.logging.wsgi_errors_stream",
            "level": handler_default_level,
            "formatter": "basic",
        },
        LOG_HANDLER_STDERR_JSON: {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
            "level": handler_default_level,
            "filters": json_filters,
            "formatter": "json",
        },
    }
    if LOG_HANDLER_ROTATING_FILE_JSON in (root_handlers or []):
        # Only defined when used: creating the handler creates the file
        handlers[LOG_HANDLER_ROTATING_FILE_JSON] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(log_file),
            "level": handler_default_level,
            "filters": json_filters,
            "formatter": "json",
            "maxBytes": rotating_file_max_bytes,
            "backupCount": rotating_file_backup_count,
        }

    return {
        "version": 1,
        "root": {
            "level": root_level,
            "handlers": (root_handlers or [LOG_HANDLER_STDERR_WSGI]),
        },
        "loggers": loggers,
        "handlers": handlers,
        "filters": {
            "FlaskRequestCorrelationIdLogging": {"()": FlaskRequestCorrelationIdLogging},
            "FlaskUserIdLogging": {"()": FlaskUserIdLogging},
            "WorkflowIdLogging": {"()": WorkflowIdLogging},
        },
        "formatters": {
            "basic": {"()": UtcFormatter, "format": LOG_FORMAT_BASIC},
            "json": {"()": pythonjsonlogger.jsonlogger.JsonFormatter, "format": JSON_LOGGER_DEFAULT_FORMAT},
        },
        # Keep loggers created before setup (werkzeug, gunicorn, ...)
        "disable_existing_loggers": False,
    }


def get_backend_logging_config(
    config: "GeoEngineBackendConfig",
    *,
    root_handlers: Optional[List[str]] = None,
    loggers: Optional[Dict[str, dict]] = None,
    context: str = LOGGING_CONTEXT_FLASK,
) -> dict:
    """
    Logging config following the backend config: the JSON file handler
    is added when `log_to_file` is enabled (in `log_dir`, with `log_file_prefix`).
    """
    root_handlers = list(root_handlers or [LOG_HANDLER_STDERR_BASIC])
    if config.log_to_file and LOG_HANDLER_ROTATING_FILE_JSON not in root_handlers:
        root_handlers.append(LOG_HANDLER_ROTATING_FILE_JSON)
    return get_logging_config(
        root_handlers=root_handlers,
        loggers=loggers,
        context=context,
        log_dir=config.log_dir,
        log_file_prefix=config.log_file_prefix,
    )


def setup_logging(
    config: Optional[dict] = None,
    force=False,
    capture_warnings=True,
    capture_threading_exceptions=True,
    capture_unhandled_exceptions=True,
):
    """
    Apply logging config (`get_logging_config()` by default, skipped when the root logger
    already has handlers, unless `force`) and route warnings, thread and unhandled exceptions to logging.
    """
    if capture_warnings is not None:
        logging.captureWarnings(capture=capture_warnings)

    config = config or get_logging_config()
    if force or not logging.getLogger().handlers:
        logging.config.dictConfig(config)

    if os.environ.get("GEOENGINE_LOGGING_THRESHOLD", "INFO").lower() == "debug":
        for logger_name in config.get("loggers", {}):
            show_log_level(logger=logger_name)
        _log.debug(f"Root handlers: {logging.getLogger().handlers}")

    if capture_threading_exceptions:
        threading.excepthook = _threading_excepthook
    if capture_unhandled_exceptions:
        sys.excepthook = _sys_excepthook


def show_log_level(logger: Union[logging.Logger, str]):
    """Log the effective threshold level of a logger (at that level)."""
    if isinstance(logger, str):
        logger = logging.getLogger(logger)
    level = logger.getEffectiveLevel()
    logger.log(level=level, msg=f"Effective log level of {logger.name!r}: {logging.getLevelName(level)}")


def _threading_excepthook(args):
    name = args.thread.name if args.thread is not None else threading.get_ident()
    _log.error(f"Exception {args.exc_type.__name__} in thread {name}: {args.exc_value!r}", exc_info=True)


def _sys_excepthook(exc_type, exc_value, traceback):
    _log.error(f"Unhandled {exc_type.__name__} exception: {exc_value!r}", exc_info=(exc_type, exc_value, traceback))


class UtcFormatter(logging.Formatter):
    """Log formatter with UTC timestamps."""

    converter = time.gmtime


class FlaskRequestCorrelationIdLogging(logging.Filter):
    """
    Log record filter that adds the correlation id of the current Flask request as `req_id`.
    The id is generated per request by `before_request` (and echoed as "Request-Id" response header).
    """

    FLASK_G_ATTR = "request_correlation_id"
    LOG_RECORD_ATTR = "req_id"

    @classmethod
    def _build_request_id(cls) -> str:
        return generate_unique_id(prefix="r")

    @classmethod
    def before_request(cls):
        setattr(flask.g, cls.FLASK_G_ATTR, cls._build_request_id())

    @classmethod
    def get_request_id(cls) -> str:
        if flask.has_request_context():
            return flask.g.get(cls.FLASK_G_ATTR, "n/a")
        return "no-request"

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, self.LOG_RECORD_ATTR):
            setattr(record, self.LOG_RECORD_ATTR, self.get_request_id())
        return True


def user_id_trim(user_id: str, size=8) -> str:
    """Trim user id (less logging volume and a bit of obfuscation)."""
    if len(user_id) > size:
        user_id = user_id[:size] + "..."
    return user_id


class FlaskUserIdLogging(logging.Filter):
    """Log record filter that adds the (trimmed) id of the authenticated user as `user_id`."""

    FLASK_G_ATTR = "current_user_id"
    LOG_RECORD_ATTR = "user_id"

    @classmethod
    def set_user_id(cls, user_id: str):
        setattr(flask.g, cls.FLASK_G_ATTR, user_id)

    @classmethod
    def get_user_id(cls) -> Union[str, None]:
        if flask.has_app_context():
            return flask.g.get(cls.FLASK_G_ATTR, None)

    def filter(self, record: logging.LogRecord) -> bool:
        setattr(record, self.LOG_RECORD_ATTR, self.get_user_id())
        return True


class WorkflowIdLogging(logging.Filter):
    """
    Log record filter that adds the id of the workflow being executed as `workflow_id`.

    Works outside Flask too (executions are pulled from streamed responses):
    the id is kept in a context variable, set with `WorkflowIdLogging.context(workflow_id)`.
    """

    LOG_RECORD_ATTR = "workflow_id"

    _current: contextvars.ContextVar = contextvars.ContextVar("geoengine_workflow_id", default=None)

    @classmethod
    @contextlib.contextmanager
    def context(cls, workflow_id: str) -> Iterator[None]:
        token = cls._current.set(workflow_id)
        try:
            yield
        finally:
            cls._current.reset(token)

    @classmethod
    def get_workflow_id(cls) -> Optional[str]:
        return cls._current.get()

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, self.LOG_RECORD_ATTR):
            setattr(record, self.LOG_RECORD_ATTR, self.get_workflow_id())
        return True


@contextlib.contextmanager
def just_log_exceptions(
    log: Union[logging.Logger, Callable, str, int] = logging.ERROR,
    name: Optional[str] = "untitled",
    extra: Optional[dict] = None,
):
    """
    Context manager that logs (instead of raises) any exception,
    e.g. while releasing resources of a failed or cancelled execution.

    :param log: a `logging.Logger`, a logging method (e.g. `_log.warning`) or a log level (int or str)
    :param name: name of the context, used in the log message
    """
    if isinstance(log, logging.Logger):
        log = log.error
    elif isinstance(log, int):
        log = functools.partial(_log.log, log)
    elif isinstance(log, str):
        log = functools.partial(_log.log, logging.getLevelName(log))
    try:
        yield
    except Exception as e:
        try:
            log(f"In context {name!r}: caught {e!r}", extra=extra, exc_info=True)
        except Exception as e:
            _log.error(f"Failed to do `just_log_exceptions` with {log=}: {e}", exc_info=True)
