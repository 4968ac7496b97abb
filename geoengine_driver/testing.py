"""
Reusable helpers and fixtures for testing
"""
import base64
import contextlib
import io
import json
import logging
import re
from typing import List, Optional, Pattern, Union
from unittest import mock

import attrs
import pythonjsonlogger.jsonlogger
from flask import Response
from flask.testing import FlaskClient
from werkzeug.datastructures import Headers

from geoengine_driver.config.load import ConfigGetter, _backend_config_getter
from geoengine_driver.users.auth import HttpAuthHandler
from geoengine_driver.util.logging import (
    LOGGING_CONTEXT_FLASK,
    FlaskRequestCorrelationIdLogging,
    FlaskUserIdLogging,
    WorkflowIdLogging,
)

_log = logging.getLogger(__name__)

TEST_USER = "Mr.Test"
TEST_USER_BEARER_TOKEN = "basic//" + HttpAuthHandler.build_basic_access_token(user_id=TEST_USER)
TEST_USER_AUTH_HEADER = {
    "Authorization": "Bearer " + TEST_USER_BEARER_TOKEN
}


class DummyUser:
    __slots__ = ["user_id", "bearer_token", "auth_header"]

    def __init__(self, user_id: str = "alice2000"):
        self.user_id = user_id
        self.bearer_token = "basic//" + HttpAuthHandler.build_basic_access_token(user_id=self.user_id)
        self.auth_header = {"Authorization": f"Bearer {self.bearer_token}"}


def build_basic_http_auth_header(username: str, password: str) -> str:
    return "Basic " + base64.b64encode("{u}:{p}".format(u=username, p=password).encode("utf-8")).decode("ascii")


# Operator tree builders, to keep test workflows compact


def mock_points(*points) -> dict:
    """`MockPointSource` operator with given (x, y) tuples."""
    return {"type": "MockPointSource", "params": {"points": [{"x": x, "y": y} for x, y in points]}}


def mock_features(*features: dict) -> dict:
    """`MockFeatureCollectionSource` operator with given feature objects."""
    return {"type": "MockFeatureCollectionSource", "params": {"features": list(features)}}


def mock_raster(data: List[list], **params) -> dict:
    """`MockRasterSource` operator with given pixel rows (and extra params like "origin")."""
    return {"type": "MockRasterSource", "params": {"data": data, **params}}


class ApiException(Exception):
    pass


class ApiResponse:
    """
    Thin wrapper around flask `Response` to simplify
    writing unit test (API status/error code) assertions
    """

    def __init__(self, response: Response):
        self.response = response

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def data(self) -> bytes:
        return self.response.data

    @property
    def json(self) -> dict:
        # Streamed responses (no JSON mimetype sniffing), so parse explicitly
        return json.loads(self.response.get_data(as_text=True))

    @property
    def text(self) -> str:
        return self.response.get_data(as_text=True)

    @property
    def headers(self) -> Headers:
        return self.response.headers

    def assert_status_code(self, status_code: int) -> "ApiResponse":
        """Check HTTP status code"""
        if self.status_code != status_code:
            message = f"Expected response with status code {status_code} but got {self.status_code}."
            if self.status_code >= 400:
                message += f" Error: {self.json}"
            raise ApiException(message)
        return self

    def assert_error_code(self, code: str) -> "ApiResponse":
        """Check error code"""
        if self.status_code < 400:
            raise ApiException("Expected response with status >= 400 but got {a}".format(a=self.status_code))
        error = self.json
        actual = error.get("code")
        if actual != code:
            raise ApiException(
                "Expected response with error code {c!r} but got {a!r}. Error: {e!r}".format(c=code, a=actual, e=error)
            )
        return self

    def assert_substring(self, key, expected: Union[str, Pattern]):
        actual = self.json[key]
        if isinstance(expected, str):
            if expected in actual:
                return self
        elif expected.search(actual):
            return self
        raise ApiException("Expected {e!r} at {k!r}, but got {a!r}".format(e=expected, k=key, a=actual))

    def assert_error(self, status_code: int, error_code: str, message: Union[str, Pattern] = None) -> "ApiResponse":
        resp = self.assert_status_code(status_code).assert_error_code(error_code)
        if message:
            resp.assert_substring("message", message)
        return resp


class ApiTester:
    """
    Helper container class for compact writing of API tests
    """

    def __init__(self, client: FlaskClient, url_root: str = "/"):
        self.client = client
        self.default_request_headers = {}
        self.url_root = url_root

    def url(self, path):
        """Build URL based on root URL."""
        return re.sub("/+", "/", f"/{self.url_root}/{path}")

    def _request_headers(self, headers: dict = None) -> dict:
        return {**self.default_request_headers, **(headers or {})}

    def set_auth_bearer_token(self, token: str = TEST_USER_BEARER_TOKEN):
        """Authentication: set bearer token header for all requests."""
        self.default_request_headers["Authorization"] = f"Bearer {token}"

    def ensure_auth_header(self):
        """Set a default authorization header if none set up yet."""
        if not self.default_request_headers.get("Authorization"):
            self.set_auth_bearer_token()

    def get(self, path: str, headers: dict = None, query: Optional[dict] = None) -> ApiResponse:
        return ApiResponse(
            self.client.get(path=self.url(path), query_string=query, headers=self._request_headers(headers))
        )

    def post(self, path: str, json: dict = None, headers: dict = None, query: Optional[dict] = None) -> ApiResponse:
        return ApiResponse(
            self.client.post(
                path=self.url(path),
                json=json or {},
                query_string=query,
                content_type="application/json",
                headers=self._request_headers(headers),
            )
        )

    def register_workflow(self, operator: dict, output_type: Optional[str] = None) -> str:
        """Register a workflow (operator tree) and return its id."""
        self.ensure_auth_header()
        data = {"operator": operator}
        if output_type:
            data["type"] = output_type
        return self.post("/workflow", json=data).assert_status_code(200).json["id"]

    def execute(self, workflow_id: str, **query) -> ApiResponse:
        """Execute a registered workflow with given query parameters (e.g. `bbox`, `time`, `limit`)."""
        self.ensure_auth_header()
        return self.post(f"/workflow/{workflow_id}/execute", query=query)


def config_overrides(config_getter: ConfigGetter = _backend_config_getter, **kwargs):
    """
    *Only to be used in unit tests*

    `mock.patch` based mocker to override the config returned by `get_backend_config()` at run time

    Can be used as context manager

        >>> with config_overrides(id="foobar"):
        ...     ...

    in a fixture (as context manager):

        >>> @pytest.fixture
        ... def custom_setup()
        ...     with config_overrides(id="foobar"):
        ...         yield

    or as test function decorator

        >>> @config_overrides(id="foobar")
        ... def test_stuff():
    """
    orig_config = config_getter.get()
    config_kwargs = {
        **attrs.asdict(orig_config, recurse=False),
        **kwargs,
    }
    overriden_config = config_getter.expected_class(**config_kwargs)
    return mock.patch.object(config_getter, "_config", new=overriden_config)


@contextlib.contextmanager
def enhanced_logging(
    level=logging.INFO,
    json=False,
    format=None,
    request_ids=("123-456", "234-567", "345-678", "456-789", "567-890"),
    context: Optional[str] = None,
):
    """Capture logging (in returned `StringIO`) with injection of request id, user id and workflow id."""
    root_logger = logging.getLogger()
    orig_root_level = root_logger.level

    out = io.StringIO()
    handler = logging.StreamHandler(out)
    handler.setLevel(level)
    if json:
        formatter = pythonjsonlogger.jsonlogger.JsonFormatter(format)
    else:
        formatter = logging.Formatter(format)
    handler.setFormatter(formatter)
    if context == LOGGING_CONTEXT_FLASK:
        handler.addFilter(FlaskRequestCorrelationIdLogging())
        handler.addFilter(FlaskUserIdLogging())
    handler.addFilter(WorkflowIdLogging())
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    try:
        with mock.patch.object(FlaskRequestCorrelationIdLogging, "_build_request_id", side_effect=request_ids):
            yield out
    finally:
        root_logger.removeHandler(handler)
        root_logger.setLevel(orig_root_level)
