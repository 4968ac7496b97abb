"""
OGC style protocol adapters, translating requests into workflow executions:

- WFS `GetFeature` (`typeNames=registry:<workflow id>`): streamed GeoJSON feature collection
- WCS `GetCoverage` (`identifier=<workflow id>`): JSON raster tiles, limited in number
"""
import json
import logging
from typing import Dict

import flask
from flask import Blueprint, jsonify, request

from geoengine_driver.backend import GeoEngineBackendImplementation
from geoengine_driver.errors import InvalidQueryParameterException
from geoengine_driver.operators import OutputKind
from geoengine_driver.users import User
from geoengine_driver.users.auth import HttpAuthHandler
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.views import EndpointRegistry, stream_execution

_log = logging.getLogger(__name__)

REGISTRY_PREFIX = "registry:"

WCS_FORMAT_JSON = "application/json"


def ogc_params(args) -> Dict[str, str]:
    """OGC request parameter names are case insensitive: normalize to lower case."""
    return {k.lower(): v for k, v in args.items()}


def parse_workflow_reference(value: str, parameter: str) -> str:
    """Extract workflow id from a `registry:<id>` style reference (prefix optional)."""
    if not value:
        raise InvalidQueryParameterException(parameter=parameter, reason="Missing workflow reference.")
    if value.startswith(REGISTRY_PREFIX):
        value = value[len(REGISTRY_PREFIX) :]
    if not value:
        raise InvalidQueryParameterException(parameter=parameter, reason="Missing workflow id.")
    return value


def _check_request(params: dict, service: str, supported: str):
    if params.get("service") and params["service"].upper() != service:
        raise InvalidQueryParameterException(parameter="service", reason=f"Expected {service!r}.")
    if params.get("request") != supported:
        raise InvalidQueryParameterException(
            parameter="request", reason=f"Unsupported request {params.get('request')!r}, expected {supported!r}."
        )


def _check_output(
    backend_implementation: GeoEngineBackendImplementation, workflow_id: str, expected: OutputKind, parameter: str
):
    workflow = backend_implementation.workflows.get(workflow_id)
    if workflow.output != expected:
        raise InvalidQueryParameterException(
            parameter=parameter,
            reason=f"Workflow {workflow_id} produces {workflow.output.value} data, expected {expected.value}.",
        )


def register_views_ogc(
    blueprint: Blueprint,
    backend_implementation: GeoEngineBackendImplementation,
    api_endpoint: EndpointRegistry,
    auth_handler: HttpAuthHandler,
):
    config = backend_implementation.config

    def default_time() -> TimeInterval:
        return backend_implementation.default_query_time()

    @api_endpoint
    @blueprint.route("/wfs", methods=["GET"])
    @auth_handler.requires_bearer_auth
    def wfs(user: User):
        params = ogc_params(request.args)
        _check_request(params, service="WFS", supported="GetFeature")
        workflow_id = parse_workflow_reference(params.get("typenames"), parameter="typeNames")
        _check_output(backend_implementation, workflow_id, expected=OutputKind.VECTOR, parameter="typeNames")
        query = backend_implementation.build_query(
            bbox=params.get("bbox"),
            srs=params.get("srsname"),
            time=params.get("time"),
            limit=params.get("count") or config.wfs_default_limit,
            chunk_byte_size=params.get("chunkbytesize"),
            default_time=default_time(),
        )
        execution = backend_implementation.processing.execute(workflow_id=workflow_id, query=query, user=user)
        return stream_execution(
            execution,
            prefix='{"type":"FeatureCollection","features":[',
            chunk_renderer=lambda collection: (json.dumps(f) for f in collection.to_geojson_features()),
        )

    @api_endpoint
    @blueprint.route("/wcs", methods=["GET"])
    @auth_handler.requires_bearer_auth
    def wcs(user: User):
        params = ogc_params(request.args)
        _check_request(params, service="WCS", supported="GetCoverage")
        workflow_id = parse_workflow_reference(params.get("identifier"), parameter="identifier")
        output_format = params.get("format", WCS_FORMAT_JSON)
        if output_format != WCS_FORMAT_JSON:
            raise InvalidQueryParameterException(
                parameter="format", reason=f"Unsupported format {output_format!r}, expected {WCS_FORMAT_JSON!r}."
            )
        _check_output(backend_implementation, workflow_id, expected=OutputKind.RASTER, parameter="identifier")
        query = backend_implementation.build_query(
            bbox=params.get("boundingbox"),
            srs=params.get("crs"),
            time=params.get("time"),
            resolution=params.get("resolution"),
            default_time=default_time(),
        )

        tiles = []
        seen = set()
        with backend_implementation.processing.execute(workflow_id=workflow_id, query=query, user=user) as execution:
            for tile in execution:
                # Sub-tiles (split to the byte budget) count as one tile
                seen.add((tile.column, tile.row, tile.time))
                if len(seen) > config.wcs_tile_limit:
                    raise InvalidQueryParameterException(
                        parameter="boundingbox",
                        reason=f"Request covers more than {config.wcs_tile_limit} tiles.",
                    )
                tiles.append(tile.to_dict())
        _log.info(f"WCS GetCoverage of workflow {workflow_id}: {len(tiles)} tile chunks")
        return jsonify({"type": "Coverage", "workflow": workflow_id, "tiles": tiles, "complete": True})
