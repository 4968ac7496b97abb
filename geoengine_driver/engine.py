"""
Execution engine: pull-based, chunked execution of workflows under a query context.

An `Execution` is a cursor with state machine

    Idle -> Validating -> Streaming -> Complete | Failed

Validation (workflow lookup, operator initialization and dataset resolution)
happens synchronously in `start()`; chunks are only produced on demand
(`next_chunk()` or iteration).
"""
import contextlib
import enum
import functools
import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Union

from openeo.util import TimingLogger

from geoengine_driver.datasets import DatasetMetadata, DatasetProviderRegistry, DatasetReference
from geoengine_driver.datatypes import FeatureCollection, PlotData, RasterTile
from geoengine_driver.errors import (
    ExecutionCancelledException,
    GeoEngineApiException,
    InternalException,
    ParameterSchemaMismatchException,
    ProviderUnavailableException,
)
from geoengine_driver.operators import PARAM_DATASET, OperatorArgs, OperatorRegistry, OutputKind
from geoengine_driver.query import CancellationToken, QueryContext
from geoengine_driver.tiling import TilingSpecification
from geoengine_driver.users import User
from geoengine_driver.util.logging import WorkflowIdLogging, just_log_exceptions
from geoengine_driver.workflow import OperatorNode, Workflow
from geoengine_driver.workflowstore import WorkflowStore

_log = logging.getLogger(__name__)

Chunk = Union[FeatureCollection, RasterTile, PlotData]

# Operator implementations are called as `function(args, sources, query, env)`
OPERATOR_ARGUMENT_NAMES = ["args", "sources", "query", "env"]


class ExecutionState(enum.Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    STREAMING = "Streaming"
    COMPLETE = "Complete"
    FAILED = "Failed"


class FailureReason(enum.Enum):
    ERROR = "Error"
    CANCELLED = "Cancelled"


class ProviderPool:
    """
    Bounded access to the dataset providers: at most `max_concurrent` provider calls
    are in flight at any time (over all executions).
    Slots are only held while a provider call (metadata or next raw chunk) is running.
    """

    # Granularity (seconds) of cancellation checks while waiting for a slot
    _POLL_INTERVAL = 0.1

    def __init__(self, providers: DatasetProviderRegistry, max_concurrent: int = 8, timeout: float = 30.0):
        self._providers = providers
        self._semaphore = threading.BoundedSemaphore(max_concurrent)
        self._timeout = timeout

    @contextlib.contextmanager
    def slot(self, reference: DatasetReference, cancellation: CancellationToken):
        """Acquire a provider slot (respecting cancellation and timeout)."""
        deadline = time.monotonic() + self._timeout
        while not self._semaphore.acquire(timeout=self._POLL_INTERVAL):
            cancellation.raise_if_cancelled()
            if time.monotonic() >= deadline:
                raise ProviderUnavailableException(
                    provider=reference.provider_id or "internal", reason="Timeout waiting for a free provider slot."
                )
        try:
            cancellation.raise_if_cancelled()
            yield
        finally:
            self._semaphore.release()

    def _call(self, reference: DatasetReference, f):
        try:
            return f()
        except GeoEngineApiException:
            raise
        except Exception as e:
            _log.error(f"Dataset provider failure for {reference}: {e!r}")
            raise ProviderUnavailableException(provider=reference.provider_id or "internal", reason=repr(e)) from e

    def meta_data(
        self, reference: DatasetReference, user: Optional[User], cancellation: CancellationToken
    ) -> DatasetMetadata:
        provider = self._providers.get(reference)
        with self.slot(reference, cancellation):
            return self._call(reference, lambda: provider.meta_data(reference, user=user))

    def load(self, reference: DatasetReference, query: QueryContext, user: Optional[User]) -> Iterator[Any]:
        """Lazily pull raw chunks from the provider, one slot acquisition per pulled chunk."""
        provider = self._providers.get(reference)
        iterator = None
        try:
            while True:
                with self.slot(reference, query.cancellation):
                    if iterator is None:
                        iterator = iter(self._call(reference, lambda: provider.load(reference, query=query, user=user)))
                    try:
                        chunk = self._call(reference, lambda: next(iterator))
                    except StopIteration:
                        return
                yield chunk
        finally:
            close = getattr(iterator, "close", None)
            if close:
                with just_log_exceptions(log=_log.warning, name=f"Closing provider stream of {reference}"):
                    close()


class ExecutionEnv:
    """Per-execution environment handed to operator implementations."""

    def __init__(
        self,
        pool: ProviderPool,
        tiling: TilingSpecification,
        user: Optional[User] = None,
        workflow_id: str = "n/a",
    ):
        self._pool = pool
        self.tiling = tiling
        self.user = user
        self.workflow_id = workflow_id
        self._meta: Dict[DatasetReference, DatasetMetadata] = {}

    def dataset_meta(
        self, reference: DatasetReference, cancellation: Optional[CancellationToken] = None
    ) -> DatasetMetadata:
        if reference not in self._meta:
            self._meta[reference] = self._pool.meta_data(
                reference, user=self.user, cancellation=cancellation or CancellationToken()
            )
        return self._meta[reference]

    def load_dataset(self, reference: DatasetReference, query: QueryContext) -> Iterator[Any]:
        return self._pool.load(reference, query=query, user=self.user)


class QueryProcessor:
    """An initialized operator (with initialized sources), ready to be queried."""

    def __init__(
        self,
        node: OperatorNode,
        output: OutputKind,
        function,
        sources: Dict[str, Union["QueryProcessor", List["QueryProcessor"]]],
        env: ExecutionEnv,
    ):
        self.node = node
        self.output = output
        self._function = function
        self.sources = sources
        self._env = env
        self._args = OperatorArgs(node.params, operator=node.type)

    def __repr__(self):
        return f"<QueryProcessor {self.node.type!r}>"

    def query(self, query: QueryContext) -> Iterator[Chunk]:
        return self._function(self._args, self.sources, query, self._env)


def _with_workflow_logging(f):
    """Tag log records emitted while running `f` with the workflow id of the execution."""

    @functools.wraps(f)
    def wrapped(self, *args, **kwargs):
        with WorkflowIdLogging.context(self.workflow_id):
            return f(self, *args, **kwargs)

    return wrapped


class Execution:
    """
    Pull-based execution cursor of a single workflow under a query context.
    """

    def __init__(self, engine: "ExecutionEngine", workflow_id: str, query: QueryContext, user: Optional[User] = None):
        self._engine = engine
        self.workflow_id = workflow_id
        self.query = query
        self.user = user
        self.state = ExecutionState.IDLE
        self.failure_reason: Optional[FailureReason] = None
        self.cause: Optional[BaseException] = None
        self.workflow: Optional[Workflow] = None
        self.chunks_emitted = 0
        self._stream: Optional[Iterator[Chunk]] = None
        self._lock = threading.Lock()

    def __repr__(self):
        return f"<Execution {self.workflow_id} {self.state.value}>"

    @property
    def complete(self) -> bool:
        """Whether the result stream was fully delivered."""
        return self.state == ExecutionState.COMPLETE

    @property
    def finished(self) -> bool:
        return self.state in (ExecutionState.COMPLETE, ExecutionState.FAILED)

    def _transition(self, state: ExecutionState):
        _log.debug(f"Execution of workflow {self.workflow_id}: {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, cause: BaseException, reason: FailureReason = FailureReason.ERROR):
        self.failure_reason = reason
        self.cause = cause
        self._transition(ExecutionState.FAILED)
        log = _log.info if reason == FailureReason.CANCELLED else _log.warning
        log(
            f"Execution of workflow {self.workflow_id} failed ({reason.value})"
            f" after {self.chunks_emitted} chunks: {cause!r}"
        )

    @_with_workflow_logging
    def start(self) -> "Execution":
        """
        Validate and prepare the execution (Idle -> Validating -> Streaming).
        Validation and not-found errors are raised here, before anything is streamed.
        """
        with self._lock:
            if self.state != ExecutionState.IDLE:
                return self
            if self.query.cancellation.cancelled:
                self._fail(ExecutionCancelledException(workflow_id=self.workflow_id), reason=FailureReason.CANCELLED)
                raise self.cause
            self._transition(ExecutionState.VALIDATING)
            try:
                with TimingLogger(title=f"Validating execution of workflow {self.workflow_id}", logger=_log.debug):
                    self.workflow = self._engine.workflow_store.get(self.workflow_id)
                    processor = self._engine.initialize(self.workflow, query=self.query, user=self.user)
            except ExecutionCancelledException as e:
                self._fail(e, reason=FailureReason.CANCELLED)
                raise
            except GeoEngineApiException as e:
                self._fail(e)
                raise
            except Exception as e:
                self._fail(e)
                raise InternalException(message=repr(e)) from e
            self._stream = self._engine.stream(processor, query=self.query)
            self._transition(ExecutionState.STREAMING)
        return self

    @_with_workflow_logging
    def next_chunk(self) -> Optional[Chunk]:
        """
        Produce the next chunk (doing only the work needed for it).
        Returns None once the execution is finished.
        The transition to `Failed` raises the cause of the failure.
        """
        if self.state == ExecutionState.IDLE:
            self.start()
        if self.finished:
            return None
        with self._lock:
            if self.finished:
                return None
            if self.query.cancellation.cancelled:
                self._close_stream()
                self._fail(ExecutionCancelledException(workflow_id=self.workflow_id), reason=FailureReason.CANCELLED)
                raise self.cause
            try:
                chunk = next(self._stream)
            except StopIteration:
                self._transition(ExecutionState.COMPLETE)
                _log.info(f"Execution of workflow {self.workflow_id} complete: {self.chunks_emitted} chunks")
                return None
            except ExecutionCancelledException as e:
                self._close_stream()
                self._fail(e, reason=FailureReason.CANCELLED)
                raise
            except GeoEngineApiException as e:
                self._close_stream()
                self._fail(e)
                raise
            except Exception as e:
                self._close_stream()
                self._fail(e)
                raise InternalException(message=repr(e)) from e
            self.chunks_emitted += 1
            return chunk

    def __iter__(self) -> Iterator[Chunk]:
        while True:
            chunk = self.next_chunk()
            if chunk is None:
                return
            yield chunk

    def cancel(self):
        """
        Request cancellation (thread safe): an in-flight or next pull stops,
        releases provider resources and fails with reason `Cancelled`.
        """
        _log.info(f"Cancelling execution of workflow {self.workflow_id}")
        self.query.cancellation.cancel()

    @_with_workflow_logging
    def close(self):
        """Release all resources. An unfinished execution ends as cancelled."""
        self.query.cancellation.cancel()
        with self._lock:
            if self.finished:
                return
            self._close_stream()
            self._fail(ExecutionCancelledException(workflow_id=self.workflow_id), reason=FailureReason.CANCELLED)

    def _close_stream(self):
        if self._stream is not None:
            with just_log_exceptions(log=_log.warning, name=f"Closing stream of workflow {self.workflow_id}"):
                self._stream.close()
            self._stream = None

    def __enter__(self) -> "Execution":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.finished:
            self.close()

    def status(self) -> dict:
        d = {"state": self.state.value, "complete": self.complete, "chunks": self.chunks_emitted}
        if self.failure_reason:
            d["reason"] = self.failure_reason.value
        if isinstance(self.cause, GeoEngineApiException):
            d["error"] = self.cause.to_dict()
        elif self.cause is not None:
            d["error"] = {"code": "Internal", "message": repr(self.cause)}
        return d


class ExecutionEngine:
    """
    Executes stored workflows. Stateless between executions:
    all per-execution state lives in `Execution` and `ExecutionEnv`.
    """

    def __init__(
        self,
        registry: OperatorRegistry,
        workflow_store: WorkflowStore,
        providers: DatasetProviderRegistry,
        tiling: TilingSpecification,
        provider_max_concurrent_requests: int = 8,
        provider_request_timeout: float = 30.0,
    ):
        self.registry = registry
        self.workflow_store = workflow_store
        self.tiling = tiling
        self.pool = ProviderPool(
            providers, max_concurrent=provider_max_concurrent_requests, timeout=provider_request_timeout
        )

    def execute(self, workflow_id: str, query: QueryContext, user: Optional[User] = None) -> Execution:
        """Create a (not yet started) execution cursor."""
        return Execution(engine=self, workflow_id=workflow_id, query=query, user=user)

    def initialize(self, workflow: Workflow, query: QueryContext, user: Optional[User] = None) -> QueryProcessor:
        """
        Build the tree of query processors for a workflow,
        resolving all dataset references (existence, permissions)
        and checking the query against the operators (e.g. raster spatial reference) up front.
        """
        env = ExecutionEnv(pool=self.pool, tiling=self.tiling, user=user, workflow_id=workflow.id)
        return self._initialize_node(workflow.root, env=env, query=query)

    def _initialize_node(self, node: OperatorNode, env: ExecutionEnv, query: QueryContext) -> QueryProcessor:
        spec = self.registry.resolve(node.type)
        for parameter in spec.parameters:
            if parameter.type == PARAM_DATASET and node.params.get(parameter.name) is not None:
                try:
                    reference = DatasetReference.from_dict(node.params[parameter.name])
                except ValueError as e:
                    raise ParameterSchemaMismatchException(
                        operator=node.type, parameter=parameter.name, reason=str(e)
                    ) from e
                meta = env.dataset_meta(reference, cancellation=query.cancellation)
                if not spec.sources and meta.output != spec.output:
                    # Source operators load data of their own output kind
                    raise ParameterSchemaMismatchException(
                        operator=node.type,
                        parameter=parameter.name,
                        reason=f"Expected a {spec.output.value} dataset, but got a {meta.output.value} dataset.",
                    )
        spec.check_query(node.params, query=query, env=env)
        sources = {}
        for name, value in node.sources.items():
            if isinstance(value, list):
                sources[name] = [self._initialize_node(n, env=env, query=query) for n in value]
            else:
                sources[name] = self._initialize_node(value, env=env, query=query)
        return QueryProcessor(
            node=node, output=spec.output, function=self.registry.get_function(node.type), sources=sources, env=env
        )

    def stream(self, processor: QueryProcessor, query: QueryContext) -> Iterator[Chunk]:
        """Root result stream: merged/split to the chunk byte budget, truncated to the feature limit."""
        budget = query.chunk_byte_budget
        with contextlib.closing(processor.query(query)) as source:
            chunks = source
            if processor.output == OutputKind.VECTOR:
                chunks = merge_feature_chunks(_limit_features(chunks, limit=query.limit), budget=budget)
            for chunk in chunks:
                query.cancellation.raise_if_cancelled()
                for piece in chunk.split_to_budget(budget):
                    yield piece


def _limit_features(chunks: Iterator[FeatureCollection], limit: Optional[int]) -> Iterator[FeatureCollection]:
    if limit is None:
        yield from chunks
        return
    remaining = limit
    if remaining <= 0:
        return
    for chunk in chunks:
        if len(chunk) >= remaining:
            yield chunk.slice(0, remaining)
            return
        remaining -= len(chunk)
        yield chunk


def merge_feature_chunks(chunks: Iterator[FeatureCollection], budget: int) -> Iterator[FeatureCollection]:
    """
    Merge consecutive (small) feature collections into chunks of at most `budget` bytes.
    Empty collections are skipped. Oversized collections are passed through (to be split downstream).
    """
    pending: List[FeatureCollection] = []
    pending_size = 0
    for chunk in chunks:
        if chunk.is_empty():
            continue
        size = chunk.byte_size()
        if pending and pending_size + size > budget:
            yield FeatureCollection.concat(pending)
            pending, pending_size = [], 0
        pending.append(chunk)
        pending_size += size
    if pending:
        yield FeatureCollection.concat(pending)
