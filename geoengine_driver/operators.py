from __future__ import annotations

import enum
import functools
import inspect
import logging
import math
import typing
from typing import Any, Callable, Collection, Dict, List, Optional, Tuple, Union

from geoengine_driver.errors import (
    GeoEngineApiException,
    ParameterSchemaMismatchException,
    UnknownOperatorTypeException,
)

_log = logging.getLogger(__name__)


class OutputKind(enum.Enum):
    """Kind of data an operator produces."""

    VECTOR = "Vector"
    RASTER = "Raster"
    PLOT = "Plot"

    @classmethod
    def parse(cls, value: Union[str, "OutputKind"]) -> "OutputKind":
        if isinstance(value, OutputKind):
            return value
        for kind in cls:
            if isinstance(value, str) and value.lower() == kind.value.lower():
                return kind
        raise ValueError(f"Invalid output kind {value!r}")


# Semantic parameter types
PARAM_STRING = "string"
PARAM_NUMBER = "number"
PARAM_INTEGER = "integer"
PARAM_BOOLEAN = "boolean"
PARAM_ARRAY = "array"
PARAM_OBJECT = "object"
PARAM_DATASET = "dataset"
PARAM_GEOMETRY_LIST = "geometry-list"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


_TYPE_CHECKS: Dict[str, Callable[[Any], bool]] = {
    PARAM_STRING: lambda v: isinstance(v, str),
    PARAM_NUMBER: _is_number,
    PARAM_INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    PARAM_BOOLEAN: lambda v: isinstance(v, bool),
    PARAM_ARRAY: lambda v: isinstance(v, list),
    PARAM_OBJECT: lambda v: isinstance(v, dict),
    PARAM_DATASET: lambda v: isinstance(v, dict),
    PARAM_GEOMETRY_LIST: lambda v: isinstance(v, list) and all(isinstance(g, (dict, str)) for g in v),
}

# Maximum nesting (of arrays and objects) within a single parameter value
MAX_PARAMETER_DEPTH = 32


def _exceeds_depth(value, max_depth: int) -> bool:
    """Whether arrays/objects in `value` are nested deeper than `max_depth` (checked without recursion)."""
    stack = [(value, 1)]
    while stack:
        v, depth = stack.pop()
        if isinstance(v, dict):
            children = v.values()
        elif isinstance(v, list):
            children = v
        else:
            continue
        if depth > max_depth:
            return True
        stack.extend((c, depth + 1) for c in children)
    return False


# Type annotation aliases
ArgumentValue = Any
Validator = Callable[[Any], bool]


class OperatorParameter:
    """Operator parameter declaration."""

    def __init__(
        self,
        name: str,
        type: str,
        description: str = "",
        required: bool = True,
        validator: Optional[Validator] = None,
    ):
        if type not in _TYPE_CHECKS:
            raise OperatorRegistryException(f"Invalid parameter type {type!r} for parameter {name!r}")
        self.name = name
        self.type = type
        self.description = description
        self.required = required
        self.validator = validator

    def to_dict(self) -> dict:
        return {"name": self.name, "type": self.type, "description": self.description, "optional": not self.required}


class SourceSlot:
    """
    Named input slot of an operator, accepting `min_count` up to `max_count`
    child operators of the given output kinds.
    """

    def __init__(self, name: str, kinds: Collection[OutputKind], min_count: int = 1, max_count: int = 1):
        if not kinds or min_count < 0 or max_count < max(1, min_count):
            raise OperatorRegistryException(f"Invalid source slot {name!r}")
        self.name = name
        self.kinds = tuple(kinds)
        self.min_count = min_count
        self.max_count = max_count

    @property
    def multiple(self) -> bool:
        """Slot (at runtime) provides a list of sources instead of a single one."""
        return self.max_count > 1

    def describe_expectation(self) -> str:
        kinds = " or ".join(k.value for k in self.kinds)
        if self.min_count == self.max_count:
            count = str(self.min_count)
        else:
            count = f"{self.min_count}..{self.max_count}"
        return f"{count} {kinds} operator(s)"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kinds": [k.value for k in self.kinds],
            "minCount": self.min_count,
            "maxCount": self.max_count,
        }


class OperatorSpec:
    """
    Declaration of an operator type: parameters, source slots and output kind.
    Built with a fluent/chained API, e.g.

        OperatorSpec("LinearScale", output=OutputKind.RASTER, description="...")
            .param("scale", PARAM_NUMBER)
            .source("raster", kinds=[OutputKind.RASTER])
    """

    def __init__(self, type_name: str, output: OutputKind, description: str = ""):
        self.type_name = type_name
        self.output = output
        self.description = description
        self._parameters: List[OperatorParameter] = []
        self._sources: List[SourceSlot] = []
        self._checks: List[Callable[[OperatorArgs, Dict[str, Any]], None]] = []
        self._query_checks: List[Callable[[OperatorArgs, Any, Any], None]] = []

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.type_name!r} -> {self.output.value}>"

    def param(
        self,
        name: str,
        type: str,
        description: str = "",
        required: bool = True,
        validator: Optional[Validator] = None,
    ) -> "OperatorSpec":
        """Add an operator parameter"""
        self._parameters.append(
            OperatorParameter(name=name, type=type, description=description, required=required, validator=validator)
        )
        return self

    def source(
        self, name: str, kinds: Collection[OutputKind], min_count: int = 1, max_count: int = 1
    ) -> "OperatorSpec":
        """Add a source slot"""
        self._sources.append(SourceSlot(name=name, kinds=kinds, min_count=min_count, max_count=max_count))
        return self

    def check(self, f: Callable[["OperatorArgs", Dict[str, Any]], None]) -> "OperatorSpec":
        """
        Add a consistency check over parameters and source output kinds
        (called as `f(args, source_kinds)`, should raise `ParameterSchemaMismatchException`).
        """
        self._checks.append(f)
        return self

    def query_check(self, f: Callable[["OperatorArgs", Any, Any], None]) -> "OperatorSpec":
        """
        Add a check of the parameters against a query, done when an execution is initialized
        (called as `f(args, query, env)`, should raise `InvalidQueryParameterException`).
        """
        self._query_checks.append(f)
        return self

    @property
    def parameters(self) -> List[OperatorParameter]:
        return list(self._parameters)

    @property
    def sources(self) -> List[SourceSlot]:
        """Source slots in declaration order."""
        return list(self._sources)

    def get_parameter(self, name: str) -> Optional[OperatorParameter]:
        return next((p for p in self._parameters if p.name == name), None)

    def get_source(self, name: str) -> Optional[SourceSlot]:
        return next((s for s in self._sources if s.name == name), None)

    def check_params(self, params: dict, max_depth: int = MAX_PARAMETER_DEPTH):
        """
        Check parameter presence and types.
        Raises `ParameterSchemaMismatchException` on missing, extra, mistyped
        or too deeply nested parameters.
        """
        if not isinstance(params, dict):
            raise ParameterSchemaMismatchException(
                operator=self.type_name, parameter="params", reason="Expected an object."
            )
        for name, value in params.items():
            if self.get_parameter(name) is None:
                raise ParameterSchemaMismatchException(
                    operator=self.type_name, parameter=name, reason="Unknown parameter."
                )
            if _exceeds_depth(value, max_depth=max_depth):
                raise ParameterSchemaMismatchException(
                    operator=self.type_name, parameter=name, reason=f"Nested deeper than {max_depth} levels."
                )
        args = OperatorArgs(params, operator=self.type_name)
        for p in self._parameters:
            if p.required:
                args.get_required(p.name, param_type=p.type, validator=p.validator)
            else:
                args.get_optional(p.name, param_type=p.type, validator=p.validator)

    def check_consistency(self, params: dict, source_kinds: Dict[str, Any]):
        """Run the consistency checks, with `source_kinds` mapping slot name to (list of) `OutputKind`."""
        args = OperatorArgs(params, operator=self.type_name)
        for f in self._checks:
            f(args, source_kinds)

    def check_query(self, params: dict, query, env):
        """Run the query checks (e.g. spatial reference compatibility) for given query and execution env."""
        args = OperatorArgs(params, operator=self.type_name)
        for f in self._query_checks:
            f(args, query, env)

    def to_dict(self) -> dict:
        return {
            "type": self.type_name,
            "description": self.description,
            "outputType": self.output.value,
            "parameters": [p.to_dict() for p in self._parameters],
            "sources": [s.to_dict() for s in self._sources],
        }


class OperatorData(typing.NamedTuple):
    spec: OperatorSpec
    function: Optional[Callable]


class OperatorRegistryException(Exception):
    pass


class OperatorRegistry:
    """
    Registry of the operator types supported by the backend.

    For each operator type we keep track of its declaration (`OperatorSpec`)
    and the Python function that implements it.
    The registry is populated at import time of the `processing` package.
    """

    def __init__(self, argument_names: Optional[List[str]] = None):
        self._operators: Dict[str, OperatorData] = {}
        # Expected argument names that operator function signature should start with
        self._argument_names = argument_names

    def __repr__(self):
        return "<{c} {n} operators>".format(c=self.__class__.__name__, n=len(self._operators))

    def __len__(self):
        return len(self._operators)

    def contains(self, type_name: str) -> bool:
        return type_name in self._operators

    def add_operator(self, spec: OperatorSpec, function: Optional[Callable] = None, allow_override: bool = False):
        """Add an operator type to the registry."""
        if self.contains(spec.type_name):
            if allow_override:
                _log.info(f"Overriding operator {spec.type_name}")
            else:
                raise OperatorRegistryException(f"Operator {spec.type_name!r} already defined")
        if function and self._argument_names:
            sig = inspect.signature(function)
            arg_names = [n for n, p in sig.parameters.items() if p.kind == inspect.Parameter.POSITIONAL_OR_KEYWORD]
            if arg_names[: len(self._argument_names)] != self._argument_names:
                raise OperatorRegistryException(
                    f"Operator {spec.type_name!r} has invalid argument names: {arg_names}."
                    f" Expected {self._argument_names}"
                )
        self._operators[spec.type_name] = OperatorData(spec=spec, function=function)

    def operator(self, spec: OperatorSpec, allow_override: bool = False) -> Callable:
        """Decorator to register the implementation of an operator type."""
        return functools.partial(self._register_decorated, spec=spec, allow_override=allow_override)

    def _register_decorated(self, f: Callable, spec: OperatorSpec, allow_override: bool) -> Callable:
        self.add_operator(spec=spec, function=f, allow_override=allow_override)
        return f

    def resolve(self, type_name: str) -> OperatorSpec:
        """Get declaration of given operator type (or fail with `UnknownOperatorType`)"""
        if not isinstance(type_name, str) or not self.contains(type_name):
            raise UnknownOperatorTypeException(operator=str(type_name))
        return self._operators[type_name].spec

    def get_function(self, type_name: str) -> Callable:
        """Get Python function implementing given operator type"""
        if not self.contains(type_name) or self._operators[type_name].function is None:
            raise UnknownOperatorTypeException(operator=type_name)
        return self._operators[type_name].function

    def get_specs(self, substring: Optional[str] = None) -> List[OperatorSpec]:
        return [
            d.spec for name, d in sorted(self._operators.items()) if not substring or substring in name
        ]

    def get_listing(self) -> dict:
        return {"operators": [s.to_dict() for s in self.get_specs()]}


class OperatorArgs(dict):
    """
    Wrapper for operator parameter extraction with proper exception throwing.
    """

    def __init__(self, args: dict, operator: Optional[str] = None):
        super().__init__(args)
        self.operator = operator

    def _fail(self, name: str, reason: str):
        raise ParameterSchemaMismatchException(operator=self.operator, parameter=name, reason=reason)

    def _check_value(
        self,
        *,
        name: str,
        value: Any,
        param_type: Optional[str] = None,
        expected_type: Optional[Union[type, Tuple[type, ...]]] = None,
        validator: Optional[Validator] = None,
    ):
        if param_type and not _TYPE_CHECKS[param_type](value):
            self._fail(name, f"Expected {param_type} but got {type(value).__name__}.")
        if expected_type and not isinstance(value, expected_type):
            self._fail(name, f"Expected {expected_type} but got {type(value)}.")
        if validator:
            reason = None
            try:
                valid = validator(value)
            except GeoEngineApiException:
                raise
            except Exception as e:
                valid = False
                reason = str(e)
            if not valid:
                self._fail(name, reason or "Failed validation.")

    def get_required(
        self,
        name: str,
        *,
        param_type: Optional[str] = None,
        expected_type: Optional[Union[type, Tuple[type, ...]]] = None,
        validator: Optional[Validator] = None,
    ) -> ArgumentValue:
        """Get a required argument by name."""
        if self.get(name) is None:
            self._fail(name, "Missing required parameter.")
        value = self[name]
        self._check_value(
            name=name, value=value, param_type=param_type, expected_type=expected_type, validator=validator
        )
        return value

    def get_optional(
        self,
        name: str,
        default: Union[Any, Callable[[], Any]] = None,
        *,
        param_type: Optional[str] = None,
        expected_type: Optional[Union[type, Tuple[type, ...]]] = None,
        validator: Optional[Validator] = None,
    ) -> ArgumentValue:
        """
        Get an optional argument with default

        :param name: argument name
        :param default: default value or a function/factory to generate the default value
        :param param_type: semantic parameter type (e.g. "number") the value should have (unless it's None)
        :param expected_type: expected class the value should be (unless it's None)
        :param validator: optional validation callable
        """
        if self.get(name) is not None:
            value = self[name]
        else:
            value = default() if callable(default) else default
        if value is not None:
            self._check_value(
                name=name, value=value, param_type=param_type, expected_type=expected_type, validator=validator
            )
        return value

    def get_enum(
        self, name: str, options: Collection[ArgumentValue], default: Optional[ArgumentValue] = None
    ) -> ArgumentValue:
        """Get argument by name and check if it belongs to given set of (enum) values."""
        if default is None:
            value = self.get_required(name=name)
        else:
            value = self.get_optional(name=name, default=default)
        if value not in options:
            self._fail(name, f"Invalid enum value {value!r}. Expected one of {options}.")
        return value
