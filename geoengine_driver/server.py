"""
Serving the Flask app with gunicorn, in a single process (the workflow store,
sessions and executions live in process memory) with a pool of threads.
"""
import logging
from typing import Callable, Optional

import flask
import gunicorn.app.base
import gunicorn.glogging

from geoengine_driver.util.logging import show_log_level

_log = logging.getLogger(__name__)


def gunicorn_options(host: str, port: int, threads: int) -> dict:
    """gunicorn settings for serving the Geo Engine app."""
    return {
        "bind": f"{host}:{port}",
        # One worker: executions are pulled from the process that started them
        "workers": 1,
        "threads": threads,
        "worker_class": "gthread",
        # Streamed query responses can take a while
        "timeout": 1000,
        "logger_class": ConformingGunicornLogger,
    }


def run_gunicorn(
    app: flask.Flask, host: str, port: int, threads: int = 4, on_started: Callable[[], None] = lambda: None
):
    """Serve the Flask app with gunicorn (blocking)."""
    options = gunicorn_options(host=host, port=port, threads=threads)
    _log.info(f"Serving {app.name!r} with gunicorn {options}")

    def when_ready(server):
        for logger in ["gunicorn.error", "geoengine_driver"]:
            show_log_level(logger)
        on_started()

    StandaloneApplication(app, when_ready=when_ready, options=options).run()


class StandaloneApplication(gunicorn.app.base.BaseApplication):
    """gunicorn application around an already constructed Flask app."""

    def __init__(self, app: flask.Flask, when_ready: Callable, options: Optional[dict] = None):
        self.application = app
        self.options = dict(options or {}, when_ready=when_ready)
        super().__init__()

    def load_config(self):
        for key, value in self.options.items():
            if key in self.cfg.settings and value is not None:
                self.cfg.set(key, value)

    def load(self):
        return self.application


class ConformingGunicornLogger(gunicorn.glogging.Logger):
    """
    gunicorn logger that leaves handling to our own logging config:
    the "gunicorn.error" and "gunicorn.access" records just propagate
    to the root handlers (set up before the app is served).
    """

    def __init__(self, cfg):
        if logging.getLogger("gunicorn.access").isEnabledFor(logging.INFO) and not cfg.accesslog:
            # gunicorn only emits access records when an access log is configured
            cfg.set("accesslog", "_dummy")
        super().__init__(cfg=cfg)

    def setup(self, cfg):
        self.error_log.propagate = True
        self.access_log.propagate = True
