import pytest

from geoengine_driver.errors import (
    InvalidQueryParameterException,
    ParameterSchemaMismatchException,
    UnknownOperatorTypeException,
)
from geoengine_driver.operators import (
    PARAM_ARRAY,
    PARAM_BOOLEAN,
    PARAM_INTEGER,
    PARAM_NUMBER,
    PARAM_STRING,
    OperatorArgs,
    OperatorRegistry,
    OperatorRegistryException,
    OperatorSpec,
    OutputKind,
)
from geoengine_driver.processing import operator_registry


def _scale_spec(name: str = "Scale") -> OperatorSpec:
    return (
        OperatorSpec(name, output=OutputKind.RASTER, description="Scale it")
        .param("factor", PARAM_NUMBER)
        .param("label", PARAM_STRING, required=False)
        .source("raster", kinds=[OutputKind.RASTER])
    )


class TestOutputKind:
    @pytest.mark.parametrize("value", ["Vector", "vector", "VECTOR", OutputKind.VECTOR])
    def test_parse(self, value):
        assert OutputKind.parse(value) == OutputKind.VECTOR

    @pytest.mark.parametrize("value", ["Vectors", "", None, 3])
    def test_parse_invalid(self, value):
        with pytest.raises(ValueError):
            OutputKind.parse(value)


class TestOperatorSpec:
    def test_to_dict(self):
        assert _scale_spec().to_dict() == {
            "type": "Scale",
            "description": "Scale it",
            "outputType": "Raster",
            "parameters": [
                {"name": "factor", "type": "number", "description": "", "optional": False},
                {"name": "label", "type": "string", "description": "", "optional": True},
            ],
            "sources": [{"name": "raster", "kinds": ["Raster"], "minCount": 1, "maxCount": 1}],
        }

    def test_invalid_param_type(self):
        with pytest.raises(OperatorRegistryException, match="Invalid parameter type 'float'"):
            OperatorSpec("Foo", output=OutputKind.PLOT).param("x", "float")

    @pytest.mark.parametrize(["min_count", "max_count"], [(-1, 1), (2, 1), (0, 0)])
    def test_invalid_source_slot(self, min_count, max_count):
        with pytest.raises(OperatorRegistryException):
            OperatorSpec("Foo", output=OutputKind.PLOT).source(
                "x", kinds=[OutputKind.VECTOR], min_count=min_count, max_count=max_count
            )

    def test_source_slot_expectation(self):
        spec = (
            OperatorSpec("Foo", output=OutputKind.PLOT)
            .source("a", kinds=[OutputKind.VECTOR])
            .source("b", kinds=[OutputKind.RASTER, OutputKind.VECTOR], min_count=1, max_count=3)
        )
        assert spec.get_source("a").describe_expectation() == "1 Vector operator(s)"
        assert spec.get_source("a").multiple is False
        assert spec.get_source("b").describe_expectation() == "1..3 Raster or Vector operator(s)"
        assert spec.get_source("b").multiple is True
        assert spec.get_source("c") is None

    def test_check_params(self):
        spec = _scale_spec()
        spec.check_params({"factor": 2})
        spec.check_params({"factor": 2.5, "label": "x"})

    @pytest.mark.parametrize(
        ["params", "parameter", "reason"],
        [
            ({}, "factor", "Missing required parameter."),
            ({"factor": "2"}, "factor", "Expected number but got str."),
            ({"factor": True}, "factor", "Expected number but got bool."),
            ({"factor": float("nan")}, "factor", "Expected number but got float."),
            ({"factor": 2, "label": 3}, "label", "Expected string but got int."),
            ({"factor": 2, "color": "red"}, "color", "Unknown parameter."),
        ],
    )
    def test_check_params_invalid(self, params, parameter, reason):
        with pytest.raises(ParameterSchemaMismatchException) as exc_info:
            _scale_spec().check_params(params)
        assert exc_info.value.parameter == parameter
        assert exc_info.value.message.endswith(reason)

    def test_check_params_not_an_object(self):
        with pytest.raises(ParameterSchemaMismatchException, match="Expected an object"):
            _scale_spec().check_params([1, 2])

    def test_check_consistency(self):
        def check(args, source_kinds):
            if source_kinds["raster"] != OutputKind.RASTER:
                raise ParameterSchemaMismatchException(operator=args.operator, parameter="raster", reason="Nope")

        spec = _scale_spec().check(check)
        spec.check_consistency({"factor": 1}, source_kinds={"raster": OutputKind.RASTER})
        with pytest.raises(ParameterSchemaMismatchException, match="Nope"):
            spec.check_consistency({"factor": 1}, source_kinds={"raster": OutputKind.VECTOR})

    def test_check_query(self):
        calls = []

        def check(args, query, env):
            calls.append((args.get_required("factor"), query, env))
            if query == "bad":
                raise InvalidQueryParameterException(parameter="srs", reason="Nope")

        spec = _scale_spec().query_check(check)
        spec.check_query({"factor": 3}, query="good", env="env")
        assert calls == [(3, "good", "env")]
        with pytest.raises(InvalidQueryParameterException, match="Nope"):
            spec.check_query({"factor": 3}, query="bad", env="env")

    def test_check_params_max_depth(self):
        spec = OperatorSpec("Deep", output=OutputKind.VECTOR).param("data", PARAM_ARRAY)
        spec.check_params({"data": [[1]]}, max_depth=2)
        spec.check_params({"data": [{"a": 1}]}, max_depth=2)
        with pytest.raises(ParameterSchemaMismatchException, match="Nested deeper than 2 levels"):
            spec.check_params({"data": [[[1]]]}, max_depth=2)
        with pytest.raises(ParameterSchemaMismatchException, match="Nested deeper than 2 levels"):
            spec.check_params({"data": [{"a": {"b": 1}}]}, max_depth=2)


class TestOperatorRegistry:
    def test_add_and_resolve(self):
        registry = OperatorRegistry()
        spec = _scale_spec()
        registry.add_operator(spec, function=lambda args, sources, query, env: iter([]))
        assert registry.contains("Scale")
        assert len(registry) == 1
        assert registry.resolve("Scale") is spec

    @pytest.mark.parametrize("type_name", ["Scalee", "", None, 42])
    def test_resolve_unknown(self, type_name):
        registry = OperatorRegistry()
        registry.add_operator(_scale_spec())
        with pytest.raises(UnknownOperatorTypeException):
            registry.resolve(type_name)

    def test_get_function_without_implementation(self):
        registry = OperatorRegistry()
        registry.add_operator(_scale_spec())
        with pytest.raises(UnknownOperatorTypeException):
            registry.get_function("Scale")

    def test_duplicate(self):
        registry = OperatorRegistry()
        registry.add_operator(_scale_spec())
        with pytest.raises(OperatorRegistryException, match="already defined"):
            registry.add_operator(_scale_spec())
        registry.add_operator(_scale_spec(), allow_override=True)

    def test_decorator(self):
        registry = OperatorRegistry(argument_names=["args", "sources", "query", "env"])

        @registry.operator(_scale_spec())
        def scale(args, sources, query, env):
            yield from []

        assert registry.get_function("Scale") is scale

    def test_argument_names(self):
        registry = OperatorRegistry(argument_names=["args", "sources", "query", "env"])
        with pytest.raises(OperatorRegistryException, match="invalid argument names"):
            registry.add_operator(_scale_spec(), function=lambda arguments, sources, query, env: None)

    def test_listing(self):
        registry = OperatorRegistry()
        registry.add_operator(_scale_spec("B"))
        registry.add_operator(_scale_spec("A"))
        assert [s.type_name for s in registry.get_specs()] == ["A", "B"]
        assert [s.type_name for s in registry.get_specs(substring="B")] == ["B"]
        assert [o["type"] for o in registry.get_listing()["operators"]] == ["A", "B"]


def test_default_registry():
    assert set(s.type_name for s in operator_registry.get_specs()) == {
        "MockPointSource",
        "MockFeatureCollectionSource",
        "MockRasterSource",
        "VectorSource",
        "RasterSource",
        "ColumnRangeFilter",
        "PointInPolygonFilter",
        "LinearScale",
        "RasterVectorJoin",
        "Histogram",
        "FeatureCount",
    }


class TestOperatorArgs:
    def test_get_required(self):
        args = OperatorArgs({"foo": 3, "bar": None}, operator="Foo")
        assert args.get_required("foo") == 3
        assert args.get_required("foo", param_type=PARAM_INTEGER) == 3
        assert args.get_required("foo", expected_type=int) == 3
        with pytest.raises(ParameterSchemaMismatchException, match="Missing required parameter"):
            args.get_required("bar")
        with pytest.raises(ParameterSchemaMismatchException, match="Missing required parameter"):
            args.get_required("meh")
        with pytest.raises(ParameterSchemaMismatchException, match="Expected boolean but got int"):
            args.get_required("foo", param_type=PARAM_BOOLEAN)

    def test_get_optional(self):
        args = OperatorArgs({"foo": 3, "bar": None}, operator="Foo")
        assert args.get_optional("foo", default=5) == 3
        assert args.get_optional("bar", default=5) == 5
        assert args.get_optional("meh") is None
        assert args.get_optional("meh", default=lambda: [1, 2]) == [1, 2]
        with pytest.raises(ParameterSchemaMismatchException, match="Expected array but got int"):
            args.get_optional("foo", param_type=PARAM_ARRAY)

    def test_validator(self):
        args = OperatorArgs({"foo": 3}, operator="Foo")
        assert args.get_required("foo", validator=lambda v: v > 2) == 3
        with pytest.raises(ParameterSchemaMismatchException, match="Failed validation"):
            args.get_required("foo", validator=lambda v: v > 5)

    def test_validator_exception_message(self):
        def validator(value):
            raise ValueError(f"Value {value} is too odd.")

        args = OperatorArgs({"foo": 3}, operator="Foo")
        with pytest.raises(ParameterSchemaMismatchException, match="Value 3 is too odd"):
            args.get_required("foo", validator=validator)

    def test_get_enum(self):
        args = OperatorArgs({"agg": "mean"}, operator="Foo")
        assert args.get_enum("agg", options=["first", "mean"]) == "mean"
        assert args.get_enum("other", options=["first", "mean"], default="first") == "first"
        with pytest.raises(ParameterSchemaMismatchException, match="Invalid enum value 'mean'"):
            args.get_enum("agg", options=["first", "last"])
