from typing import List, Optional

import pytest

from geoengine_driver.datasets import DatasetProviderRegistry
from geoengine_driver.datatypes import FeatureCollection
from geoengine_driver.dummy.dummy_backend import (
    NDVI_DATASET_ID,
    PORTS_DATASET_ID,
    REGIONS_DATASET_ID,
    build_dummy_datasets,
)
from geoengine_driver.engine import ExecutionEngine
from geoengine_driver.errors import (
    ChildArityMismatchException,
    ChildTypeMismatchException,
    InvalidQueryParameterException,
    ParameterSchemaMismatchException,
)
from geoengine_driver.processing import operator_registry
from geoengine_driver.query import QueryContext
from geoengine_driver.testing import mock_features, mock_points, mock_raster
from geoengine_driver.tiling import TilingSpecification
from geoengine_driver.workflow import WorkflowBuilder
from geoengine_driver.workflowstore import InMemoryWorkflowStore

PORTS = {"type": "VectorSource", "params": {"dataset": {"type": "internal", "datasetId": PORTS_DATASET_ID}}}
REGIONS = {"type": "VectorSource", "params": {"dataset": {"type": "internal", "datasetId": REGIONS_DATASET_ID}}}
NDVI = {"type": "RasterSource", "params": {"dataset": {"type": "internal", "datasetId": NDVI_DATASET_ID}}}


@pytest.fixture
def builder() -> WorkflowBuilder:
    return WorkflowBuilder(registry=operator_registry)


@pytest.fixture
def run(builder):
    engine = ExecutionEngine(
        registry=operator_registry,
        workflow_store=InMemoryWorkflowStore(),
        providers=DatasetProviderRegistry(internal=build_dummy_datasets()),
        tiling=TilingSpecification(origin_x=0, origin_y=0, tile_width_pixels=4, tile_height_pixels=4),
    )

    def run(raw: dict, bbox: str = "-180,-90,180,90", time: str = "2014-01-01T00:00:00Z", **query) -> list:
        workflow = engine.workflow_store.register(builder.build(raw))
        query = QueryContext.from_request(bbox=bbox, time=time, **query)
        return list(engine.execute(workflow.id, query=query).start())

    return run


def _features(chunks: list) -> Optional[FeatureCollection]:
    return FeatureCollection.concat(chunks) if chunks else FeatureCollection.empty()


def _names(chunks: list) -> List[str]:
    return _features(chunks).columns.get("name", [])


class TestMockSources:
    def test_mock_points(self, run):
        (chunk,) = run(mock_points((1, 2), (3, 4)), bbox="0,0,10,10")
        assert [(g.x, g.y) for g in chunk.geometries] == [(1, 2), (3, 4)]
        assert chunk.columns == {}

    def test_mock_points_invalid(self, builder):
        with pytest.raises(ParameterSchemaMismatchException, match="Expected a coordinate"):
            builder.build({"type": "MockPointSource", "params": {"points": [{"x": 1}]}})

    def test_mock_features(self, run):
        raw = mock_features(
            {"geometry": {"type": "Point", "coordinates": [1, 1]}, "properties": {"name": "a", "value": 1}},
            {"geometry": "POINT (2 2)", "time": "2014-01-01/2014-02-01", "properties": {"name": "b"}},
            {"geometry": {"x": 3, "y": 3}, "time": "2020-01-01/2021-01-01", "properties": {"name": "c"}},
        )
        (chunk,) = run(raw, bbox="0,0,10,10")
        assert chunk.columns == {"name": ["a", "b"], "value": [1, None]}
        assert [str(t) for t in chunk.time_intervals][1] == "2014-01-01T00:00:00Z/2014-02-01T00:00:00Z"

    def test_mock_features_invalid_geometry(self, builder):
        with pytest.raises(ParameterSchemaMismatchException):
            builder.build(mock_features({"geometry": {"foo": "bar"}}))

    def test_mock_raster(self, run):
        (tile,) = run(mock_raster([[1, None], [3, 4]], origin=[4, 4]), bbox="4,2,6,4")
        assert (tile.column, tile.row) == (1, -1)
        assert tile.to_dict()["data"][:2] == [[1, None, None, None], [3, 4, None, None]]

    def test_mock_raster_time(self, run):
        assert run(mock_raster([[1]], time="2020-01-01/2021-01-01"), bbox="0,0,1,1") == []
        assert len(run(mock_raster([[1]], time="2013-01-01/2015-01-01"), bbox="0,0,1,1")) == 1

    def test_mock_raster_ragged(self, builder):
        with pytest.raises(ParameterSchemaMismatchException, match="same length"):
            builder.build(mock_raster([[1, 2], [3]]))

    def test_mock_raster_other_spatial_reference(self, run):
        with pytest.raises(InvalidQueryParameterException, match="can not be queried"):
            run(mock_raster([[1]], spatialReference="EPSG:3857"), bbox="0,0,1,1")


class TestVectorSource:
    def test_all(self, run):
        assert _names(run(PORTS)) == ["Hamburg", "Rotterdam", "Antwerp", "Marseille"]

    def test_bbox(self, run):
        assert _names(run(PORTS, bbox="0,45,20,60")) == ["Hamburg", "Rotterdam", "Antwerp"]

    def test_attribute_filters(self, run):
        raw = {
            "type": "VectorSource",
            "params": {
                "dataset": {"type": "internal", "datasetId": PORTS_DATASET_ID},
                "attributeFilters": [{"attribute": "population", "ranges": [[600000, 2000000]]}],
            },
        }
        assert _names(run(raw)) == ["Hamburg", "Rotterdam"]

    def test_invalid_reference(self, builder):
        with pytest.raises(ParameterSchemaMismatchException, match="must be a UUID"):
            builder.build({"type": "VectorSource", "params": {"dataset": {"type": "internal", "datasetId": "ports"}}})

    def test_reprojected_query(self, run):
        # Hamburg and Rotterdam in web mercator
        chunks = run(PORTS, bbox="450000,6700000,1200000,7100000", srs="EPSG:3857")
        features = _features(chunks)
        assert features.columns["name"] == ["Hamburg", "Rotterdam"]
        assert features.geometries[0].x == pytest.approx(1113194.9, abs=1)


class TestColumnRangeFilter:
    @pytest.mark.parametrize(
        ["ranges", "keep_nulls", "expected"],
        [
            ([[500000, 700000]], False, ["Rotterdam", "Antwerp"]),
            ([[500000, 700000]], True, ["Rotterdam", "Antwerp", "Marseille"]),
            ([[0, 1], [1800000, 1800000]], False, ["Hamburg"]),
            ([["a", "z"]], False, []),
        ],
    )
    def test_numeric(self, run, ranges, keep_nulls, expected):
        raw = {
            "type": "ColumnRangeFilter",
            "params": {"column": "population", "ranges": ranges, "keepNulls": keep_nulls},
            "sources": {"vector": PORTS},
        }
        assert _names(run(raw)) == expected

    def test_text(self, run):
        raw = {
            "type": "ColumnRangeFilter",
            "params": {"column": "name", "ranges": [["A", "M"]]},
            "sources": {"vector": PORTS},
        }
        assert _names(run(raw)) == ["Hamburg", "Antwerp"]

    def test_unknown_column(self, run):
        raw = {
            "type": "ColumnRangeFilter",
            "params": {"column": "depth", "ranges": [[0, 1]]},
            "sources": {"vector": PORTS},
        }
        with pytest.raises(ParameterSchemaMismatchException, match="Unknown column 'depth'"):
            run(raw)

    @pytest.mark.parametrize(
        ["ranges", "message"],
        [
            ([[5, 1]], "larger than maximum"),
            ([[1, "z"]], "both be numbers or both be strings"),
            ([[1, 2, 3]], "Expected a \\[min, max\\] pair"),
        ],
    )
    def test_invalid_ranges(self, builder, ranges, message):
        raw = {"type": "ColumnRangeFilter", "params": {"column": "x", "ranges": ranges}, "sources": {"vector": PORTS}}
        with pytest.raises(ParameterSchemaMismatchException, match=message):
            builder.build(raw)


class TestPointInPolygonFilter:
    def test_ports_in_regions(self, run):
        raw = {"type": "PointInPolygonFilter", "sources": {"points": PORTS, "polygons": REGIONS}}
        assert _names(run(raw)) == ["Rotterdam", "Antwerp"]

    def test_border_and_multipoint(self, run):
        polygons = mock_features({"geometry": "POLYGON ((0 0, 4 0, 4 4, 0 4, 0 0))"})
        points = mock_features(
            {"geometry": "POINT (4 2)", "properties": {"name": "border"}},
            {"geometry": "POINT (5 5)", "properties": {"name": "outside"}},
            {"geometry": "MULTIPOINT ((9 9), (1 1))", "properties": {"name": "multi"}},
        )
        raw = {"type": "PointInPolygonFilter", "sources": {"points": points, "polygons": polygons}}
        assert _names(run(raw, bbox="0,0,10,10")) == ["border", "multi"]

    def test_no_polygons(self, run):
        polygons = mock_features({"geometry": "POLYGON ((50 50, 51 50, 51 51, 50 51, 50 50))"})
        raw = {"type": "PointInPolygonFilter", "sources": {"points": mock_points((1, 1)), "polygons": polygons}}
        assert run(raw, bbox="0,0,10,10") == []

    def test_missing_source(self, builder):
        with pytest.raises(ChildArityMismatchException):
            builder.build({"type": "PointInPolygonFilter", "sources": {"points": PORTS}})

    def test_raster_source(self, builder):
        with pytest.raises(ChildTypeMismatchException):
            builder.build({"type": "PointInPolygonFilter", "sources": {"points": PORTS, "polygons": NDVI}})


class TestLinearScale:
    def test_mock_raster(self, run):
        raw = {
            "type": "LinearScale",
            "params": {"scale": 2, "offset": 1},
            "sources": {"raster": mock_raster([[1, -1], [3, 4]], noDataValue=-1)},
        }
        (tile,) = run(raw, bbox="0,0,2,2")
        assert tile.no_data_value == -1
        assert tile.to_dict()["data"][2:] == [[3, None, None, None], [7, 9, None, None]]

    def test_ndvi(self, run):
        raw = {"type": "LinearScale", "params": {"scale": 10}, "sources": {"raster": NDVI}}
        tiles = run(raw, bbox="0,0,4,4", time="2014-03-01T00:00:00Z")
        assert len(tiles) == 1
        assert tiles[0].to_dict()["data"][2] == [90, 100, None, 120]

    def test_vector_source(self, builder):
        with pytest.raises(ChildTypeMismatchException):
            builder.build({"type": "LinearScale", "params": {"scale": 2}, "sources": {"raster": PORTS}})

    def test_missing_scale(self, builder):
        with pytest.raises(ParameterSchemaMismatchException):
            builder.build({"type": "LinearScale", "params": {}, "sources": {"raster": NDVI}})


class TestRasterVectorJoin:
    RASTER = mock_raster([[1, 2], [3, 4]])

    def test_points(self, run):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": ["value"]},
            "sources": {"vector": mock_points((0.5, 1.5), (1.5, 0.5), (8, 8)), "rasters": [self.RASTER]},
        }
        (chunk,) = run(raw, bbox="0,0,10,10")
        assert chunk.columns == {"value": [1, 4, None]}

    @pytest.mark.parametrize(["aggregation", "expected"], [("first", 1), ("mean", 2.5)])
    def test_polygon(self, run, aggregation, expected):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": ["value"], "featureAggregation": aggregation},
            "sources": {
                "vector": mock_features({"geometry": "POLYGON ((0 0, 2 0, 2 2, 0 2, 0 0))"}),
                "rasters": [self.RASTER],
            },
        }
        (chunk,) = run(raw, bbox="0,0,10,10")
        assert chunk.columns == {"value": [expected]}

    def test_multiple_rasters(self, run):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": ["a", "b"]},
            "sources": {"vector": mock_points((1.5, 1.5)), "rasters": [self.RASTER, mock_raster([[7]], origin=[1, 2])]},
        }
        (chunk,) = run(raw, bbox="0,0,10,10")
        assert chunk.columns == {"a": [2], "b": [7]}

    def test_ndvi_time(self, run):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": ["ndvi"]},
            "sources": {"vector": mock_points((0.5, 3.5), (2.5, 1.5)), "rasters": [NDVI]},
        }
        (chunk,) = run(raw, bbox="0,0,4,4")
        assert chunk.columns == {"ndvi": [1, None]}

    @pytest.mark.parametrize(
        ["names", "message"],
        [
            (["a"], "Expected one name per raster \\(2\\), but got 1"),
            (["a", "a"], "Duplicate names"),
        ],
    )
    def test_invalid_names(self, builder, names, message):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": names},
            "sources": {"vector": PORTS, "rasters": [NDVI, NDVI]},
        }
        with pytest.raises(ParameterSchemaMismatchException, match=message):
            builder.build(raw)

    def test_too_many_rasters(self, builder):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": [f"r{i}" for i in range(9)]},
            "sources": {"vector": PORTS, "rasters": [NDVI] * 9},
        }
        with pytest.raises(ChildArityMismatchException):
            builder.build(raw)

    def test_invalid_aggregation(self, builder):
        raw = {
            "type": "RasterVectorJoin",
            "params": {"names": ["a"], "featureAggregation": "max"},
            "sources": {"vector": PORTS, "rasters": [NDVI]},
        }
        with pytest.raises(ParameterSchemaMismatchException):
            builder.build(raw)


class TestHistogram:
    def test_raster(self, run):
        raw = {"type": "Histogram", "params": {"buckets": 2}, "sources": {"source": mock_raster([[1, 2], [3, 4]])}}
        (plot,) = run(raw, bbox="0,0,2,2")
        assert plot.to_dict() == {
            "type": "Plot",
            "plotType": "Histogram",
            "data": {
                "min": 1.0,
                "max": 4.0,
                "buckets": [{"min": 1.0, "max": 2.5, "count": 2}, {"min": 2.5, "max": 4.0, "count": 2}],
                # Fill pixels of the 4x4 tile
                "noDataCount": 12,
            },
        }

    def test_vector_with_bounds(self, run):
        raw = {
            "type": "Histogram",
            "params": {"buckets": 2, "columnName": "population", "bounds": {"min": 0, "max": 2000000}},
            "sources": {"source": PORTS},
        }
        (plot,) = run(raw)
        assert [b["count"] for b in plot.data["buckets"]] == [2, 1]
        assert plot.data["noDataCount"] == 1

    def test_raster_with_bounds_over_tiles(self, run):
        source = mock_raster([[1, 2, 3, 4, 5, 6, 7, 8], [8, 7, 6, 5, 4, 3, 2, 1]])
        derived = {"type": "Histogram", "params": {"buckets": 4}, "sources": {"source": source}}
        bounded = {**derived, "params": {"buckets": 4, "bounds": {"min": 1, "max": 8}}}
        (plot,) = run(bounded, bbox="0,0,8,2")
        assert plot.data == {
            "min": 1,
            "max": 8,
            "buckets": [
                {"min": 1.0, "max": 2.75, "count": 4},
                {"min": 2.75, "max": 4.5, "count": 4},
                {"min": 4.5, "max": 6.25, "count": 4},
                {"min": 6.25, "max": 8.0, "count": 4},
            ],
            # Fill pixels of two 4x4 tiles
            "noDataCount": 16,
        }
        (derived_plot,) = run(derived, bbox="0,0,8,2")
        assert derived_plot.data["buckets"] == plot.data["buckets"]

    def test_raster_values_outside_bounds(self, run):
        source = mock_raster([[1, 2, 3, 4, 5, 6, 7, 8]])
        raw = {
            "type": "Histogram",
            "params": {"buckets": 1, "bounds": {"min": 2, "max": 7}},
            "sources": {"source": source},
        }
        (plot,) = run(raw, bbox="0,0,8,1")
        assert plot.data["buckets"] == [{"min": 2.0, "max": 7.0, "count": 6}]

    def test_empty(self, run):
        raw = {"type": "Histogram", "params": {"buckets": 4, "columnName": "population"}, "sources": {"source": PORTS}}
        (plot,) = run(raw, bbox="100,0,110,10")
        assert plot.data == {"min": None, "max": None, "buckets": [], "noDataCount": 0}

    def test_column_name_required_for_vector(self, builder):
        with pytest.raises(ParameterSchemaMismatchException, match="Required for vector sources"):
            builder.build({"type": "Histogram", "params": {"buckets": 2}, "sources": {"source": PORTS}})

    def test_column_name_not_supported_for_raster(self, builder):
        raw = {"type": "Histogram", "params": {"buckets": 2, "columnName": "x"}, "sources": {"source": NDVI}}
        with pytest.raises(ParameterSchemaMismatchException, match="Not supported for raster sources"):
            builder.build(raw)

    def test_invalid_bounds(self, builder):
        raw = {
            "type": "Histogram",
            "params": {"buckets": 2, "bounds": {"min": 5, "max": 1}},
            "sources": {"source": NDVI},
        }
        with pytest.raises(ParameterSchemaMismatchException, match="larger than maximum"):
            builder.build(raw)


class TestFeatureCount:
    def test_count(self, run):
        (plot,) = run({"type": "FeatureCount", "sources": {"vector": PORTS}}, bbox="0,45,20,60")
        assert plot.to_dict() == {"type": "Plot", "plotType": "FeatureCount", "data": {"count": 3}}

    def test_empty(self, run):
        (plot,) = run({"type": "FeatureCount", "sources": {"vector": PORTS}}, bbox="100,0,110,10")
        assert plot.data == {"count": 0}
