import os
import time
from typing import Optional

import flask
import pytest

import geoengine_driver.config.load
import geoengine_driver.dummy.dummy_config
from geoengine_driver.config import GeoEngineBackendConfig
from geoengine_driver.dummy.dummy_backend import DummyBackendImplementation
from geoengine_driver.testing import ApiTester, config_overrides
from geoengine_driver.views import build_app


def pytest_configure(config):
    # Isolate tests from the host machine’s timezone
    os.environ["TZ"] = "UTC"
    time.tzset()

    # Load dummy GeoEngineBackendConfig by default
    os.environ["GEOENGINE_BACKEND_CONFIG"] = geoengine_driver.dummy.dummy_config.__file__


@pytest.fixture
def backend_config_overrides() -> Optional[dict]:
    # No overrides by default
    return None


@pytest.fixture
def backend_config(backend_config_overrides) -> GeoEngineBackendConfig:
    """
    Fixture to get the default GeoEngineBackendConfig and optionally override some fields
    during the lifetime of a test through parameterization of the `backend_config_overrides` fixture.
    """
    if backend_config_overrides is None:
        yield geoengine_driver.config.load.get_backend_config()
    else:
        with config_overrides(**backend_config_overrides):
            yield geoengine_driver.config.load.get_backend_config()


@pytest.fixture
def backend_implementation(backend_config) -> DummyBackendImplementation:
    return DummyBackendImplementation(config=backend_config)


TEST_APP_CONFIG = dict(
    TESTING=True,
    SERVER_NAME="geoengine.test",
)


@pytest.fixture
def flask_app(backend_implementation) -> flask.Flask:
    app = build_app(backend_implementation=backend_implementation)
    app.config.from_mapping(TEST_APP_CONFIG)
    return app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def api(client) -> ApiTester:
    return ApiTester(client=client)

