import numpy
import pytest
import shapely.geometry
from numpy.testing import assert_equal
from shapely.geometry import Point

from geoengine_driver.datatypes import ChunkTooLargeException, FeatureCollection, PlotData, RasterTile
from geoengine_driver.util.date_math import TimeInterval
from geoengine_driver.util.geometry import BoundingBox, SpatialReference


def _points(n: int, **columns) -> FeatureCollection:
    return FeatureCollection(geometries=[Point(i, i) for i in range(n)], columns=columns)


class TestFeatureCollection:
    def test_basic(self):
        fc = _points(3, name=["a", "b", "c"])
        assert len(fc) == 3
        assert not fc.is_empty()
        assert fc.time_intervals == [TimeInterval.unbounded()] * 3

    def test_unequal_columns(self):
        with pytest.raises(ValueError):
            _points(3, name=["a", "b"])

    def test_byte_size(self):
        # overhead + 1 coordinate + time
        assert _points(1).byte_size() == 8 + 16 + 16
        # string: utf-8 bytes + 8, number: 8, null: 1
        fc = _points(2, name=["ab", "é"], value=[1.5, None])
        assert fc.feature_byte_size(0) == 40 + (2 + 8) + 8
        assert fc.feature_byte_size(1) == 40 + (2 + 8) + 1
        assert fc.byte_size() == 58 + 51

    def test_polygon_byte_size(self):
        fc = FeatureCollection(geometries=[shapely.geometry.box(0, 0, 1, 1)])
        assert fc.byte_size() == 8 + 5 * 16 + 16

    def test_concat(self):
        merged = FeatureCollection.concat([_points(2, v=[1, 2]), _points(1, v=[3])])
        assert len(merged) == 3
        assert merged.columns == {"v": [1, 2, 3]}
        assert len(FeatureCollection.concat([])) == 0

    def test_concat_mismatch(self):
        with pytest.raises(ValueError):
            FeatureCollection.concat([_points(2, v=[1, 2]), _points(1, w=[3])])

    def test_select_slice_filter(self):
        fc = _points(4, v=[0, 1, 2, 3])
        assert fc.select([3, 1]).columns == {"v": [3, 1]}
        assert fc.slice(1, 10).columns == {"v": [1, 2, 3]}
        assert fc.filter([True, False, False, True]).columns == {"v": [0, 3]}
        with pytest.raises(ValueError):
            fc.filter([True])

    def test_with_column(self):
        fc = _points(2).with_column("x", [1, 2])
        assert fc.columns == {"x": [1, 2]}
        with pytest.raises(ValueError):
            fc.with_column("y", [1])

    def test_clip(self):
        fc = FeatureCollection(
            geometries=[Point(0, 0), Point(5, 5), Point(1, 1)],
            time_intervals=[
                TimeInterval.from_values("2014-01-01", "2015-01-01"),
                TimeInterval.from_values("2014-01-01", "2015-01-01"),
                TimeInterval.from_values("2016-01-01", "2017-01-01"),
            ],
            columns={"v": [0, 1, 2]},
        )
        clipped = fc.clip(bounds=BoundingBox.from_wsen_tuple((0, 0, 2, 2)), time=TimeInterval.instant("2014-06-01"))
        assert clipped.columns == {"v": [0]}

    def test_reproject(self):
        fc = _points(2)
        wgs84 = SpatialReference.epsg_4326()
        assert fc.reproject(from_srs=wgs84, to_srs=wgs84) is fc
        utm = fc.reproject(from_srs=wgs84, to_srs=SpatialReference.parse("EPSG:3857"))
        assert utm.geometries[0].equals(Point(0, 0))
        assert utm.geometries[1].x == pytest.approx(111319.49, abs=0.1)

    def test_split_to_budget(self):
        fc = _points(5, v=list(range(5)))
        # 48 bytes per feature
        chunks = list(fc.split_to_budget(100))
        assert [len(c) for c in chunks] == [2, 2, 1]
        assert all(c.byte_size() <= 100 for c in chunks)
        assert FeatureCollection.concat(chunks).columns == fc.columns
        assert [len(c) for c in fc.split_to_budget(1000)] == [5]
        assert list(FeatureCollection.empty().split_to_budget(10)) == []

    def test_split_to_budget_too_large(self):
        with pytest.raises(ChunkTooLargeException, match=r"\(48 bytes\) exceeds chunk byte budget \(47 bytes\)"):
            list(_points(2, v=[1, 2]).split_to_budget(47))

    def test_to_geojson(self):
        fc = FeatureCollection(
            geometries=[Point(1, 2)],
            time_intervals=[TimeInterval.from_values("2014-01-01", "2014-02-01")],
            columns={"name": ["x"], "value": [float("nan")]},
        )
        assert fc.to_dict() == {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "geometry": {"type": "Point", "coordinates": (1.0, 2.0)},
                    "properties": {
                        "name": "x",
                        "value": None,
                        "start": "2014-01-01T00:00:00Z",
                        "end": "2014-02-01T00:00:00Z",
                    },
                }
            ],
        }


class TestRasterTile:
    @pytest.fixture
    def tile(self) -> RasterTile:
        return RasterTile(
            data=numpy.arange(16, dtype=float).reshape((4, 4)),
            bounds=BoundingBox.from_wsen_tuple((0, 0, 4, 4)),
            time=TimeInterval.unbounded(),
            no_data_value=5,
            column=0,
            row=-1,
        )

    def test_basic(self, tile):
        assert tile.shape == (4, 4)
        assert tile.resolution == (1, 1)
        assert tile.byte_size() == 16 * 8

    def test_not_2d(self):
        with pytest.raises(ValueError):
            RasterTile(data=numpy.zeros(3), bounds=BoundingBox.from_wsen_tuple((0, 0, 1, 1)), time=None)

    def test_valid_mask(self, tile):
        tile = tile.with_data(numpy.where(tile.data == 6, numpy.nan, tile.data))
        mask = tile.valid_mask()
        assert mask.sum() == 14
        assert not mask[1, 1]
        assert not mask[1, 2]

    def test_value_at(self, tile):
        assert tile.value_at(0.5, 3.5) == 0
        assert tile.value_at(3.5, 0.5) == 15
        # Boundaries of the tile are inclusive
        assert tile.value_at(4, 0) == 15
        # No-data
        assert tile.value_at(1.5, 2.5) is None
        assert tile.value_at(5, 5) is None

    def test_sub_tile(self, tile):
        sub = tile.sub_tile(1, 3, 2, 4)
        assert_equal(sub.data, [[6, 7], [10, 11]])
        assert sub.bounds.as_wsen_tuple() == (2, 1, 4, 3)
        assert sub.offset == (2, 1)
        assert (sub.column, sub.row) == (0, -1)

    def test_split_to_budget_fits(self, tile):
        assert list(tile.split_to_budget(1000)) == [tile]

    def test_split_to_budget_row_bands(self, tile):
        chunks = list(tile.split_to_budget(64))
        assert [c.shape for c in chunks] == [(2, 4), (2, 4)]
        assert [c.offset for c in chunks] == [(0, 0), (0, 2)]
        assert all(c.byte_size() <= 64 for c in chunks)

    def test_split_to_budget_row_segments(self, tile):
        chunks = list(tile.split_to_budget(24))
        assert len(chunks) == 8
        assert [c.shape for c in chunks[:2]] == [(1, 3), (1, 1)]
        assert [c.offset for c in chunks[:2]] == [(0, 0), (3, 0)]
        assert_equal(numpy.concatenate([c.data.ravel() for c in chunks]), tile.data.ravel())

    def test_split_to_budget_too_small(self, tile):
        with pytest.raises(ChunkTooLargeException):
            list(tile.split_to_budget(4))

    def test_to_dict(self, tile):
        d = tile.sub_tile(0, 1, 0, 4).to_dict()
        assert d["type"] == "RasterTile"
        assert d["shape"] == [1, 4]
        assert d["data"] == [[0, 1, 2, 3]]
        assert d["bounds"] == {"lowerLeftCoordinate": {"x": 0, "y": 3}, "upperRightCoordinate": {"x": 4, "y": 4}}
        assert tile.to_dict()["data"][1] == [4, None, 6, 7]


class TestPlotData:
    def test_basic(self):
        plot = PlotData("FeatureCount", {"count": 3})
        assert plot.to_dict() == {"type": "Plot", "plotType": "FeatureCount", "data": {"count": 3}}
        assert plot.byte_size() == len('{"count":3}')
        assert list(plot.split_to_budget(100)) == [plot]

    def test_atomic(self):
        with pytest.raises(ChunkTooLargeException):
            list(PlotData("FeatureCount", {"count": 3}).split_to_budget(5))
