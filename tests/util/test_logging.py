import json
import logging

import flask
import pytest

from geoengine_driver.config import GeoEngineBackendConfig
from geoengine_driver.testing import enhanced_logging, mock_points
from geoengine_driver.util.logging import (
    LOG_HANDLER_ROTATING_FILE_JSON,
    LOG_HANDLER_STDERR_BASIC,
    LOGGING_CONTEXT_FLASK,
    FlaskRequestCorrelationIdLogging,
    FlaskUserIdLogging,
    WorkflowIdLogging,
    get_backend_logging_config,
    get_logging_config,
    just_log_exceptions,
    user_id_trim,
)


def test_filter_flask_request_correlation_id_logging():
    with enhanced_logging(format="[%(req_id)s] %(message)s", context=LOGGING_CONTEXT_FLASK) as logs:
        app = flask.Flask(__name__)
        log = logging.getLogger(__name__)

        log.info("Setting up app")

        @app.before_request
        def before_request():
            FlaskRequestCorrelationIdLogging.before_request()

        @app.route("/hello")
        def hello():
            log.warning("Watch out!")
            return "Hello world"

        with app.test_client() as client:
            client.get("/hello")

    logs = [l for l in logs.getvalue().split("\n")]
    assert "[no-request] Setting up app" in logs
    assert "[123-456] Watch out!" in logs


def test_filter_flask_user_id_logging():
    with enhanced_logging(format="[%(user_id)s] %(message)s", context=LOGGING_CONTEXT_FLASK) as logs:
        app = flask.Flask(__name__)
        log = logging.getLogger(__name__)

        @app.route("/public")
        def public():
            log.info("public stuff")
            return "Hello world"

        @app.route("/private")
        def private():
            FlaskUserIdLogging.set_user_id("john")
            log.info("private stuff")
            return "Hello John"

        with app.test_client() as client:
            client.get("/public")
            client.get("/private")
            client.get("/public")

    logs = [l for l in logs.getvalue().split("\n") if "stuff" in l]
    assert logs == ["[None] public stuff", "[john] private stuff", "[None] public stuff"]


def test_json_logging_extra():
    log = logging.getLogger(__name__)
    with enhanced_logging(json=True, context="test") as logs:
        log.info("Executing", extra={"workflow_id": "wf-123"})

    logs = [json.loads(l) for l in logs.getvalue().strip().split("\n")]
    assert logs == [{"message": "Executing", "workflow_id": "wf-123"}]


def test_user_id_trim():
    assert user_id_trim("pol") == "pol"
    assert user_id_trim("536e61f6fb8489946ab99ed3a028") == "536e61f6..."


def test_get_logging_config_default():
    config = get_logging_config()
    assert config["root"]["handlers"] == ["wsgi"]
    assert LOG_HANDLER_ROTATING_FILE_JSON not in config["handlers"]
    assert config["handlers"]["stderr_json"]["filters"] == [
        "FlaskRequestCorrelationIdLogging",
        "FlaskUserIdLogging",
        "WorkflowIdLogging",
    ]
    assert config["loggers"]["urllib3"] == {"level": "WARN"}


def test_get_logging_config_rotating_file(tmp_path):
    config = get_logging_config(
        root_handlers=[LOG_HANDLER_ROTATING_FILE_JSON], log_dir=tmp_path, log_file_prefix="engine", context="cli"
    )
    handler = config["handlers"][LOG_HANDLER_ROTATING_FILE_JSON]
    assert handler["filename"] == str(tmp_path / "engine.log")
    assert handler["filters"] == ["WorkflowIdLogging"]
    assert handler["formatter"] == "json"


def test_just_log_exceptions_default(caplog):
    with just_log_exceptions():
        x = 4 / 0

    expected = (
        "geoengine_driver.util.logging",
        logging.ERROR,
        "In context 'untitled': caught ZeroDivisionError('division by zero')",
    )
    assert caplog.record_tuples == [expected]


def test_just_log_exceptions_logger_method(caplog):
    log = logging.getLogger("foo.dothetest")
    with just_log_exceptions(log=log.warning, name="closing"):
        x = 4 / 0

    expected = (
        "foo.dothetest",
        logging.WARNING,
        "In context 'closing': caught ZeroDivisionError('division by zero')",
    )
    assert caplog.record_tuples == [expected]


@pytest.mark.parametrize(
    ["level"],
    [(logging.INFO,), ("INFO",)],
)
def test_just_log_exceptions_log_level(caplog, level):
    caplog.set_level(logging.INFO)
    with just_log_exceptions(log=level):
        x = 4 / 0

    expected = (
        "geoengine_driver.util.logging",
        logging.INFO,
        "In context 'untitled': caught ZeroDivisionError('division by zero')",
    )
    assert caplog.record_tuples == [expected]


def test_just_log_exceptions_invalid_logger(caplog):
    caplog.set_level(logging.INFO)
    not_a_logger = None
    with just_log_exceptions(log=not_a_logger):
        raise RuntimeError("Nope")

    expected = (
        "geoengine_driver.util.logging",
        logging.ERROR,
        "Failed to do `just_log_exceptions` with log=None: 'NoneType' object is not callable",
    )
    assert caplog.record_tuples == [expected]


def test_filter_workflow_id_logging():
    log = logging.getLogger(__name__)
    with enhanced_logging(format="[%(workflow_id)s] %(message)s") as logs:
        log.info("before")
        with WorkflowIdLogging.context("wf-1"):
            log.info("executing")
            with WorkflowIdLogging.context("wf-2"):
                log.info("nested")
            log.info("still executing")
        log.info("after")

    logs = [l for l in logs.getvalue().split("\n") if l]
    assert logs == ["[None] before", "[wf-1] executing", "[wf-2] nested", "[wf-1] still executing", "[None] after"]


def test_execution_logs_workflow_id(backend_implementation):
    workflow = backend_implementation.workflows.register({"operator": mock_points((1, 2))})
    query = backend_implementation.build_query(bbox="0,0,10,10", time="2014-01-01T00:00:00Z")
    with enhanced_logging(format="[%(workflow_id)s] %(message)s") as logs:
        with backend_implementation.processing.execute(workflow.id, query=query) as execution:
            assert len(list(execution)) == 1

    logs = logs.getvalue().split("\n")
    assert f"[{workflow.id}] Execution of workflow {workflow.id} complete: 1 chunks" in logs


def test_get_backend_logging_config(tmp_path):
    config = get_backend_logging_config(GeoEngineBackendConfig(log_to_file=False))
    assert config["root"]["handlers"] == [LOG_HANDLER_STDERR_BASIC]
    assert LOG_HANDLER_ROTATING_FILE_JSON not in config["handlers"]

    config = get_backend_logging_config(
        GeoEngineBackendConfig(log_to_file=True, log_dir=str(tmp_path), log_file_prefix="engine")
    )
    assert config["root"]["handlers"] == [LOG_HANDLER_STDERR_BASIC, LOG_HANDLER_ROTATING_FILE_JSON]
    assert config["handlers"][LOG_HANDLER_ROTATING_FILE_JSON]["filename"] == str(tmp_path / "engine.log")
