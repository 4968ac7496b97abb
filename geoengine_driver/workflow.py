"""
Workflows: validated, immutable operator trees with a content based identifier.
"""
import copy
import hashlib
import json
import logging
import uuid
from typing import Dict, List, Optional, Tuple, Union

from geoengine_driver.errors import (
    ChildArityMismatchException,
    ChildTypeMismatchException,
    MaxDepthExceededException,
    WorkflowInvalidException,
)
from geoengine_driver.operators import OperatorRegistry, OperatorSpec, OutputKind

_log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64

SourceValue = Union["OperatorNode", List["OperatorNode"]]


class OperatorNode:
    """
    Single (immutable) node of a workflow: operator type, parameters
    and child operators per source slot.
    """

    __slots__ = ("_type", "_params", "_sources")

    def __init__(self, type: str, params: Optional[dict] = None, sources: Optional[Dict[str, SourceValue]] = None):
        self._type = type
        self._params = copy.deepcopy(params or {})
        self._sources = {k: (list(v) if isinstance(v, list) else v) for k, v in (sources or {}).items()}

    @property
    def type(self) -> str:
        return self._type

    @property
    def params(self) -> dict:
        return copy.deepcopy(self._params)

    @property
    def sources(self) -> Dict[str, SourceValue]:
        return {k: (list(v) if isinstance(v, list) else v) for k, v in self._sources.items()}

    def children(self) -> List["OperatorNode"]:
        """Child nodes, in source slot order."""
        result = []
        for value in self._sources.values():
            result.extend(value if isinstance(value, list) else [value])
        return result

    def __repr__(self):
        return f"<OperatorNode {self._type!r} ({len(self.children())} children)>"

    def __eq__(self, other):
        return isinstance(other, OperatorNode) and self.to_dict() == other.to_dict()

    def __hash__(self):
        return hash(canonical_json(self.to_dict()))

    def to_dict(self) -> dict:
        return {
            "type": self._type,
            "params": copy.deepcopy(self._params),
            "sources": {
                k: ([n.to_dict() for n in v] if isinstance(v, list) else v.to_dict()) for k, v in self._sources.items()
            },
        }


def canonical_json(data) -> str:
    """
    Canonical JSON serialization: object keys sorted, no insignificant whitespace.
    Arrays keep their order.
    """
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def workflow_id(root: OperatorNode) -> str:
    """Deterministic, content based workflow id (UUID formatted SHA-256 digest)."""
    digest = hashlib.sha256(canonical_json(root.to_dict()).encode("utf-8")).digest()
    return str(uuid.UUID(bytes=digest[:16]))


class Workflow:
    """A validated operator tree with its content based id."""

    def __init__(self, root: OperatorNode, output: OutputKind):
        self.root = root
        self.output = output
        self.id = workflow_id(root)

    def __repr__(self):
        return f"<Workflow {self.id} {self.output.value} {self.root.type!r}>"

    def __eq__(self, other):
        return isinstance(other, Workflow) and self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def to_dict(self) -> dict:
        return {"type": self.output.value, "operator": self.root.to_dict()}

    def metadata(self) -> dict:
        return {"id": self.id, "type": self.root.type, "outputType": self.output.value}


class _Frame:
    __slots__ = ["raw", "depth", "spec", "slots"]

    def __init__(self, raw, depth: int):
        self.raw = raw
        self.depth = depth
        self.spec: Optional[OperatorSpec] = None
        # List of (slot name, is-list, number of children)
        self.slots: List[Tuple[str, bool, int]] = []


class WorkflowBuilder:
    """
    Validates raw (JSON-style) operator trees against the operator registry
    and builds `Workflow` objects from them.

    Traversal is iterative (explicit stack), so deep trees can not
    exhaust the interpreter stack. The nesting depth is capped at `max_depth`.
    """

    def __init__(self, registry: OperatorRegistry, max_depth: int = DEFAULT_MAX_DEPTH):
        self._registry = registry
        self._max_depth = max_depth

    def build_submission(self, raw: dict) -> Workflow:
        """
        Build workflow from a submission envelope `{"type": <output kind>, "operator": <operator tree>}`.
        """
        if not isinstance(raw, dict) or "operator" not in raw:
            raise WorkflowInvalidException(reason="Expected an object with an 'operator' field.")
        workflow = self.build(raw["operator"])
        if "type" in raw:
            try:
                declared = OutputKind.parse(raw["type"])
            except ValueError as e:
                raise WorkflowInvalidException(reason=str(e)) from e
            if declared != workflow.output:
                raise WorkflowInvalidException(
                    reason=f"Declared type {declared.value} does not match operator output {workflow.output.value}."
                )
        return workflow

    def build(self, raw: dict) -> Workflow:
        """Validate and build workflow from raw operator tree"""
        root, output = self._build_node(raw)
        try:
            workflow = Workflow(root=root, output=output)
        except (TypeError, ValueError) as e:
            # e.g. NaN or non-JSON values in parameters
            raise WorkflowInvalidException(reason=f"Operator tree can not be serialized: {e}") from e
        _log.debug(f"Built workflow {workflow!r}")
        return workflow

    def _build_node(self, raw: dict) -> Tuple[OperatorNode, OutputKind]:
        stack: List[Tuple[_Frame, bool]] = [(_Frame(raw, depth=1), False)]
        results: List[Tuple[OperatorNode, OutputKind]] = []
        while stack:
            frame, expanded = stack.pop()
            if not expanded:
                children = self._expand(frame)
                stack.append((frame, True))
                for child in reversed(children):
                    stack.append((_Frame(child, depth=frame.depth + 1), False))
            else:
                count = sum(n for _, _, n in frame.slots)
                child_results = results[len(results) - count :]
                del results[len(results) - count :]
                results.append(self._assemble(frame, child_results))
        assert len(results) == 1
        return results[0]

    def _expand(self, frame: _Frame) -> list:
        """Validate a single node (without its children) and list its raw children."""
        if frame.depth > self._max_depth:
            raise MaxDepthExceededException(max_depth=self._max_depth)
        raw = frame.raw
        if not isinstance(raw, dict):
            raise WorkflowInvalidException(reason=f"Expected an operator object, but got {type(raw).__name__}.")
        unknown_keys = set(raw.keys()).difference({"type", "params", "sources"})
        if unknown_keys:
            raise WorkflowInvalidException(reason=f"Unexpected operator fields {sorted(unknown_keys)}.")
        spec = self._registry.resolve(raw.get("type"))
        frame.spec = spec

        params = raw.get("params")
        spec.check_params({} if params is None else params)

        raw_sources = raw.get("sources") or {}
        if not isinstance(raw_sources, dict):
            raise WorkflowInvalidException(reason=f"Sources of {spec.type_name!r} must be an object.")
        for name, value in raw_sources.items():
            if spec.get_source(name) is None:
                raise ChildArityMismatchException(
                    operator=spec.type_name, slot=name, expected="no operators", actual=_count(value)
                )

        children = []
        for slot in spec.sources:
            value = raw_sources.get(slot.name)
            count = _count(value)
            if not slot.min_count <= count <= slot.max_count:
                raise ChildArityMismatchException(
                    operator=spec.type_name, slot=slot.name, expected=slot.describe_expectation(), actual=count
                )
            if count:
                children.extend(value if isinstance(value, list) else [value])
            frame.slots.append((slot.name, slot.multiple, count))
        return children

    def _assemble(
        self, frame: _Frame, child_results: List[Tuple[OperatorNode, OutputKind]]
    ) -> Tuple[OperatorNode, OutputKind]:
        spec = frame.spec
        sources = {}
        source_kinds = {}
        offset = 0
        for slot_name, multiple, count in frame.slots:
            slot = spec.get_source(slot_name)
            slot_results = child_results[offset : offset + count]
            offset += count
            for node, kind in slot_results:
                if kind not in slot.kinds:
                    raise ChildTypeMismatchException(
                        operator=spec.type_name,
                        slot=slot_name,
                        expected=" or ".join(k.value for k in slot.kinds),
                        actual=kind.value,
                        child=node.type,
                    )
            nodes = [node for node, _ in slot_results]
            kinds = [kind for _, kind in slot_results]
            if multiple:
                sources[slot_name] = nodes
                source_kinds[slot_name] = kinds
            elif nodes:
                sources[slot_name] = nodes[0]
                source_kinds[slot_name] = kinds[0]
        params = frame.raw.get("params") or {}
        spec.check_consistency(params, source_kinds=source_kinds)
        return OperatorNode(type=spec.type_name, params=params, sources=sources), spec.output


def _count(value) -> int:
    if value is None:
        return 0
    if isinstance(value, list):
        return len(value)
    return 1
