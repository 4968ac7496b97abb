import functools
import json
import logging
from collections import defaultdict, namedtuple
from typing import Callable, Iterator, List, Optional, Tuple

import flask
import flask_cors
from flask import Blueprint, Flask, jsonify, make_response, request
from werkzeug.exceptions import HTTPException, NotFound
from werkzeug.middleware.proxy_fix import ProxyFix

from geoengine_driver.backend import GeoEngineBackendImplementation
from geoengine_driver.engine import Execution
from geoengine_driver.errors import GeoEngineApiException, InternalException, WorkflowInvalidException
from geoengine_driver.users import User
from geoengine_driver.users.auth import HttpAuthHandler
from geoengine_driver.util.logging import FlaskRequestCorrelationIdLogging

_log = logging.getLogger(__name__)


class GeoEngineApiApp(Flask):
    def __init__(self, import_name):
        super().__init__(import_name=import_name)

        # Make sure app handles reverse proxy aspects (e.g. HTTPS) correctly.
        self.wsgi_app = ProxyFix(self.wsgi_app)

        # Setup up general CORS headers (for all HTTP methods)
        flask_cors.CORS(
            self,
            origins="*",
            send_wildcard=True,
            supports_credentials=False,
            allow_headers=["Content-Type", "Authorization"],
            expose_headers=["Location", "Request-Id"],
        )

    def make_default_options_response(self):
        # Customization of OPTIONS response
        rv = super().make_default_options_response()
        rv.status_code = 204
        rv.content_type = "application/json"
        return rv


def build_app(
    backend_implementation: GeoEngineBackendImplementation,
    error_handling=True,
    import_name=__name__,
) -> GeoEngineApiApp:
    """
    Build Flask app serving the endpoints that are implemented in given backend implementation

    After building the flask app you can configure it with standard flask configuration tools
    (https://flask.palletsprojects.com/en/2.3.x/config/), e.g.:

        app = build_app(backend_implementation=backend_implementation)
        app.config['TESTING'] = True
    """
    app = GeoEngineApiApp(import_name=import_name)

    @app.before_request
    def _before_request():
        FlaskRequestCorrelationIdLogging.before_request()

        # Log some info about request
        data = request.data
        if len(data) > 1000:
            data = repr(data[:1000] + b"...") + " ({b} bytes)".format(b=len(data))
        else:
            data = repr(data)
        _log.info("Handling {method} {url} with data {data}".format(method=request.method, url=request.url, data=data))

    @app.after_request
    def _after_request(response):
        response.headers["Request-Id"] = FlaskRequestCorrelationIdLogging.get_request_id()
        return response

    if error_handling:
        register_error_handlers(app=app)

    auth = HttpAuthHandler(config=backend_implementation.config)
    # Allow access to auth handler from other parts of the app
    app.extensions["auth_handler"] = auth

    api_reg = EndpointRegistry()
    bp = Blueprint("geoengine", import_name=__name__)

    register_views_general(
        blueprint=bp, backend_implementation=backend_implementation, api_endpoint=api_reg, auth_handler=auth
    )
    register_views_auth(
        blueprint=bp, backend_implementation=backend_implementation, api_endpoint=api_reg, auth_handler=auth
    )
    register_views_workflows(
        blueprint=bp, backend_implementation=backend_implementation, api_endpoint=api_reg, auth_handler=auth
    )

    # Avoid circular import
    from geoengine_driver.ogc import register_views_ogc

    register_views_ogc(
        blueprint=bp, backend_implementation=backend_implementation, api_endpoint=api_reg, auth_handler=auth
    )

    app.register_blueprint(bp)
    app.extensions["endpoint_metadata"] = api_reg.get_path_metadata(bp)

    # Load flask settings from config.
    app.config.from_mapping(backend_implementation.config.flask_settings)

    return app


def register_error_handlers(app: flask.Flask):
    """Register error handlers to the app"""
    # Dedicated log channel for unhandled exceptions (unhandled by the view functions internally)
    _log = logging.getLogger(f"{__name__}.error")

    @app.errorhandler(HTTPException)
    def handle_http_exceptions(error: HTTPException):
        """Error handler for werkzeug HTTPException"""
        # Convert to GeoEngineApiException based handling
        return handle_geoengine_api_exception(
            GeoEngineApiException(
                message=str(error),
                code="NotFound" if isinstance(error, NotFound) else "Internal",
                status_code=error.code,
            )
        )

    @app.errorhandler(GeoEngineApiException)
    def handle_geoengine_api_exception(error: GeoEngineApiException, log_message: Optional[str] = None):
        """Error handler for GeoEngineApiException"""
        if error.status_code >= 500:
            _log.error(log_message or repr(error), exc_info=True)
        else:
            _log.warning(log_message or repr(error))
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_error(error: Exception):
        """Generic error handler"""
        return handle_geoengine_api_exception(InternalException(message=repr(error)), log_message=repr(error))


def response_204_no_content():
    return make_response("", 204, {"Content-Type": "application/json"})


EndpointMetadata = namedtuple("EndpointMetadata", ["hidden"])


class EndpointRegistry:
    """
    Registry of API endpoints, to be used as decorator with flask view functions.

    Allows setting some additional metadata and automatic generation of
    the endpoints listing in the capabilities endpoint.
    """

    def __init__(self):
        self._endpoints = {}

    def add_endpoint(self, view_func: Callable, hidden=False):
        """Register endpoint metadata"""
        self._endpoints[view_func.__name__] = EndpointMetadata(hidden=hidden)
        return view_func

    def __call__(self, view_func: Callable = None, *, hidden=False):
        if view_func is None:
            # Decorator with arguments: return wrapper to call with decorated function.
            return functools.partial(self.add_endpoint, hidden=hidden)
        else:
            # Argument-less decorator call: we already have the function to wrap, use default options.
            return self.add_endpoint(view_func)

    def get_path_metadata(self, blueprint: Blueprint) -> List[Tuple[str, set, EndpointMetadata]]:
        """
        Join registered blueprint routes with endpoint metadata
        and get a listing of (path, methods, metadata) tuples
        """
        app = Flask("dummy")
        app.register_blueprint(blueprint)
        metadata = []
        for rule in app.url_map.iter_rules():
            if rule.endpoint.startswith(blueprint.name + "."):
                name = rule.endpoint.split(".", 1)[1]
                if name in self._endpoints:
                    metadata.append((rule.rule, rule.methods.difference({"HEAD", "OPTIONS"}), self._endpoints[name]))
        return metadata

    @staticmethod
    def get_capabilities_endpoints(metadata: List[Tuple[str, set, EndpointMetadata]]) -> List[dict]:
        """
        Extract "capabilities" endpoint listing from metadata list
        """
        endpoint_methods = defaultdict(set)
        for path, methods, info in metadata:
            if not info.hidden:
                endpoint_methods[path].update(methods)
        return [
            {"path": p.replace("<", "{").replace(">", "}"), "methods": sorted(ms)}
            for p, ms in sorted(endpoint_methods.items())
        ]


def register_views_general(
    blueprint: Blueprint,
    backend_implementation: GeoEngineBackendImplementation,
    api_endpoint: EndpointRegistry,
    auth_handler: HttpAuthHandler,
):
    @blueprint.route("/")
    def index():
        capabilities = backend_implementation.capabilities()
        capabilities["endpoints"] = EndpointRegistry.get_capabilities_endpoints(
            flask.current_app.extensions["endpoint_metadata"]
        )
        return jsonify(capabilities)

    @api_endpoint
    @blueprint.route("/health")
    def health():
        response = backend_implementation.health_check(options=request.args.to_dict())
        if isinstance(response, str):
            response = jsonify({"health": response})
        elif isinstance(response, dict):
            response = jsonify(response)
        return response

    @api_endpoint
    @blueprint.route("/operators")
    @auth_handler.public
    def operators():
        return jsonify(backend_implementation.operator_registry.get_listing())


def register_views_auth(
    blueprint: Blueprint,
    backend_implementation: GeoEngineBackendImplementation,
    api_endpoint: EndpointRegistry,
    auth_handler: HttpAuthHandler,
):
    if backend_implementation.config.enable_basic_auth:

        @api_endpoint
        @blueprint.route("/credentials/basic", methods=["GET"])
        @auth_handler.requires_http_basic_auth
        def credentials_basic():
            access_token, user_id = auth_handler.authenticate_basic(request)
            return jsonify({"access_token": access_token, "user_id": user_id})

    @api_endpoint
    @blueprint.route("/anonymous", methods=["GET", "POST"])
    def anonymous():
        return jsonify(auth_handler.create_anonymous_session())

    @api_endpoint
    @blueprint.route("/logout", methods=["POST"])
    @auth_handler.requires_bearer_auth
    def logout(user: User):
        auth_handler.end_session(auth_handler.get_auth_token(request, "Bearer"))
        return response_204_no_content()

    @api_endpoint
    @blueprint.route("/me", methods=["GET"])
    @auth_handler.requires_bearer_auth
    def me(user: User):
        return jsonify({"user_id": user.user_id, "info": user.info, "roles": sorted(user.get_roles())})


def _get_request_json() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        raise WorkflowInvalidException(reason="Expected a JSON request body.")
    return data


def stream_execution(
    execution: Execution, prefix: str, chunk_renderer: Callable[[object], Iterator[str]]
) -> flask.Response:
    """
    Stream the chunks of a (started) execution as a JSON document:
    `prefix`, the rendered chunks (comma separated), and a trailer with the final execution state.
    A failure after streaming started is reported in the trailer (`"complete": false` and `"error"`).
    """

    def generate():
        first = True
        yield prefix
        try:
            for chunk in execution:
                for rendered in chunk_renderer(chunk):
                    yield rendered if first else "," + rendered
                    first = False
        except GeoEngineApiException as e:
            _log.warning(f"Streaming of {execution!r} stopped: {e!r}")
        finally:
            if not execution.finished:
                execution.close()
        status = execution.status()
        trailer = {k: v for k, v in status.items() if k in ("state", "complete", "error")}
        yield "]," + json.dumps(trailer)[1:]

    return flask.Response(flask.stream_with_context(generate()), mimetype="application/json")


def register_views_workflows(
    blueprint: Blueprint,
    backend_implementation: GeoEngineBackendImplementation,
    api_endpoint: EndpointRegistry,
    auth_handler: HttpAuthHandler,
):
    @api_endpoint
    @blueprint.route("/workflow", methods=["POST"])
    @auth_handler.requires_bearer_auth
    def workflow_register(user: User):
        workflow = backend_implementation.workflows.register(_get_request_json())
        return jsonify({"id": workflow.id})

    @api_endpoint
    @blueprint.route("/workflow/<workflow_id>", methods=["GET"])
    @auth_handler.requires_bearer_auth
    def workflow_get(workflow_id: str, user: User):
        return jsonify(backend_implementation.workflows.get(workflow_id).to_dict())

    @api_endpoint
    @blueprint.route("/workflow/<workflow_id>/metadata", methods=["GET"])
    @auth_handler.requires_bearer_auth
    def workflow_metadata(workflow_id: str, user: User):
        return jsonify(backend_implementation.workflows.get_metadata(workflow_id))

    @api_endpoint
    @blueprint.route("/workflow/<workflow_id>/execute", methods=["POST"])
    @auth_handler.requires_bearer_auth
    def workflow_execute(workflow_id: str, user: User):
        query = backend_implementation.build_query(
            bbox=request.args.get("bbox"),
            srs=request.args.get("crs"),
            time=request.args.get("time"),
            limit=request.args.get("limit"),
            chunk_byte_size=request.args.get("chunkByteSize"),
            resolution=request.args.get("resolution"),
        )
        # Validation and not-found errors are raised here (before streaming starts)
        execution = backend_implementation.processing.execute(workflow_id=workflow_id, query=query, user=user)
        return stream_execution(
            execution,
            prefix=json.dumps({"workflow": workflow_id})[:-1] + ',"chunks":[',
            chunk_renderer=lambda chunk: [json.dumps(chunk.to_dict())],
        )
