"""
Script to start a local server with the dummy backend.
"""

import logging
import os
import sys

from geoengine_driver.config import get_backend_config
from geoengine_driver.dummy.dummy_backend import DummyBackendImplementation
from geoengine_driver.server import run_gunicorn
from geoengine_driver.util.logging import get_backend_logging_config, setup_logging
from geoengine_driver.views import build_app

_log = logging.getLogger("geoengine-dummy-local")


def create_app():
    # "create_app" factory for Flask Application discovery
    # see https://flask.palletsprojects.com/en/2.1.x/cli/#application-discovery
    return build_app(backend_implementation=DummyBackendImplementation())


if __name__ == "__main__":
    setup_logging(
        get_backend_logging_config(
            get_backend_config(),
            loggers={
                "geoengine_driver": {"level": "DEBUG"},
                "flask": {"level": "DEBUG"},
                "werkzeug": {"level": "DEBUG"},
            },
        )
    )
    _log.info(repr({"pid": os.getpid(), "interpreter": sys.executable, "version": sys.version, "argv": sys.argv}))

    run_gunicorn(app=create_app(), threads=4, host="127.0.0.1", port=8080)
