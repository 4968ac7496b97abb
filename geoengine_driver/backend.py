"""

Base structure of the Geo Engine backend, to be exposed with an HTTP REST frontend.

It is organised in microservice-like parts (workflow registration, dataset providers
and processing) to allow composability, isolation and better reuse.
"""
import logging
from typing import Optional, Sequence, Union

import flask
from openeo.util import dict_no_none

from geoengine_driver.config import GeoEngineBackendConfig, get_backend_config
from geoengine_driver.datasets import DatasetProviderRegistry, HttpDatasetProvider, InMemoryDatasetProvider
from geoengine_driver.engine import Execution, ExecutionEngine
from geoengine_driver.operators import OperatorRegistry
from geoengine_driver.query import QueryContext
from geoengine_driver.users import User
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.workflow import Workflow, WorkflowBuilder
from geoengine_driver.workflowstore import InMemoryWorkflowStore, WorkflowStore

_log = logging.getLogger(__name__)


class MicroService:
    """
    Base class for a backend "microservice"
    (grouped subset of backend functionality)
    """


class Workflows(MicroService):
    """
    Workflow registration (validation and content based deduplication) and lookup.
    """

    def __init__(self, registry: OperatorRegistry, store: Optional[WorkflowStore] = None, max_depth: int = 64):
        self.builder = WorkflowBuilder(registry=registry, max_depth=max_depth)
        self.store = store or InMemoryWorkflowStore()

    def register(self, submission: dict) -> Workflow:
        """Validate a `{"type", "operator"}` submission and store it (if not stored already)."""
        workflow = self.builder.build_submission(submission)
        return self.store.register(workflow)

    def get(self, workflow_id: str) -> Workflow:
        return self.store.get(workflow_id)

    def get_metadata(self, workflow_id: str) -> dict:
        return self.store.get(workflow_id).metadata()


class Processing(MicroService):
    """
    Execution of registered workflows.
    """

    def __init__(self, engine: ExecutionEngine):
        self.engine = engine

    def execute(self, workflow_id: str, query: QueryContext, user: Optional[User] = None) -> Execution:
        """Start (validate) an execution. Validation and not-found errors are raised immediately."""
        return self.engine.execute(workflow_id=workflow_id, query=query, user=user).start()


def build_dataset_providers(
    config: GeoEngineBackendConfig, internal: Optional[InMemoryDatasetProvider] = None
) -> DatasetProviderRegistry:
    providers = DatasetProviderRegistry(internal=internal or InMemoryDatasetProvider())
    for provider_id, url in config.http_dataset_providers.items():
        _log.info(f"Registering HTTP dataset provider {provider_id!r} at {url!r}")
        providers.register(
            provider_id,
            HttpDatasetProvider(provider_id=provider_id, url=url, retry_settings=config.provider_retry_settings),
        )
    return providers


class GeoEngineBackendImplementation:
    """
    Simple container of all Geo Engine "microservices"
    """

    def __init__(
        self,
        *,
        operator_registry: Optional[OperatorRegistry] = None,
        datasets: Optional[DatasetProviderRegistry] = None,
        workflow_store: Optional[WorkflowStore] = None,
        config: Optional[GeoEngineBackendConfig] = None,
    ):
        self.config: GeoEngineBackendConfig = config or get_backend_config()
        if operator_registry is None:
            from geoengine_driver.processing import operator_registry
        self.operator_registry = operator_registry
        self.datasets = datasets or build_dataset_providers(self.config)
        self.workflows = Workflows(
            registry=self.operator_registry, store=workflow_store, max_depth=self.config.workflow_max_depth
        )
        self.processing = Processing(
            engine=ExecutionEngine(
                registry=self.operator_registry,
                workflow_store=self.workflows.store,
                providers=self.datasets,
                tiling=self.config.tiling_specification,
                provider_max_concurrent_requests=self.config.provider_max_concurrent_requests,
                provider_request_timeout=self.config.provider_request_timeout,
            )
        )

    def health_check(self, options: Optional[dict] = None) -> Union[str, dict, flask.Response]:
        return "OK"

    def capabilities(self) -> dict:
        return dict_no_none(
            id=self.config.id,
            title=self.config.title,
            backend_version=self.config.backend_version,
            deploy_metadata=self.config.deploy_metadata,
            tiling_specification=self.config.tiling_specification.to_dict(),
            providers=sorted(self.datasets.provider_ids()),
        )

    def default_query_time(self) -> TimeInterval:
        return TimeInterval.from_values(*self.config.ogc_default_time)

    def build_query(
        self,
        bbox: Union[str, Sequence[float], None],
        srs: Optional[str] = None,
        time: Optional[str] = None,
        limit: Union[str, int, None] = None,
        chunk_byte_size: Union[str, int, None] = None,
        resolution: Optional[str] = None,
        default_time: Optional[TimeInterval] = None,
    ) -> QueryContext:
        """Build query context from request parameters, with the configured defaults."""
        return QueryContext.from_request(
            bbox=bbox,
            srs=srs,
            time=time,
            limit=limit,
            chunk_byte_budget=chunk_byte_size,
            default_time=default_time,
            default_chunk_byte_budget=self.config.query_chunk_byte_size,
            resolution=resolution,
        )
