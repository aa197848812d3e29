"""
Tests for ingestion.run_paths — school-run paths from GeoJSON uploads.
"""

import json

import pytest

from ingestion.run_paths import RunPathError, parse_run_paths, split_route_name


def _feature(geometry, **props):
    return {"type": "Feature", "geometry": geometry, "properties": props}


def _collection(*features) -> str:
    return json.dumps({"type": "FeatureCollection", "features": list(features)})


LINE = {"type": "LineString", "coordinates": [[174.70, -36.80], [174.71, -36.81], [174.72, -36.82]]}


class TestParseRunPaths:
    def test_line_string(self):
        (path,) = parse_run_paths(_collection(_feature(
            LINE, ROUTEPATTERN="P7", ROUTENAME="Oak Park to Hill School", ROUTENUMBER="12", AGENCYNAME="GoBus",
        )))
        assert path.id == "school:P7"
        assert (path.dep_name, path.dest_name) == ("Oak Park", "Hill School")
        assert path.coords[0] == (-36.80, 174.70)
        assert (path.start.name, path.start.lat) == ("Oak Park", -36.80)
        assert (path.end.name, path.end.lon) == ("Hill School", 174.72)
        assert (path.number, path.agency) == ("12", "GoBus")

    def test_multi_line_string_is_flattened(self):
        geometry = {
            "type": "MultiLineString",
            "coordinates": [[[1.0, 2.0], [3.0, 4.0]], [[5.0, 6.0]]],
        }
        (path,) = parse_run_paths(_collection(_feature(geometry, OBJECTID=3)))
        assert path.coords == [(2.0, 1.0), (4.0, 3.0), (6.0, 5.0)]
        assert path.id == "school:3"

    def test_name_falls_back_to_number_then_id(self):
        paths = parse_run_paths(_collection(
            _feature(LINE, OBJECTID=1, ROUTENUMBER="44"),
            _feature(LINE, OBJECTID=2),
        ))
        assert [p.name for p in paths] == ["44", "2"]
        assert paths[1].dep_name == paths[1].dest_name == "2"

    def test_generated_id_without_identifiers(self):
        (path,) = parse_run_paths(_collection(_feature(LINE)))
        assert path.id.startswith("school:")
        assert len(path.id) > len("school:")

    def test_unusable_features_skipped(self, caplog):
        paths = parse_run_paths(_collection(
            _feature({"type": "Point", "coordinates": [1.0, 2.0]}),
            _feature({"type": "LineString", "coordinates": []}),
            _feature(None),
            _feature(LINE, OBJECTID=9),
        ))
        assert [p.id for p in paths] == ["school:9"]
        assert "Skipped 3 features" in caplog.text

    def test_no_usable_features(self):
        with pytest.raises(RunPathError, match="No line features"):
            parse_run_paths(_collection(_feature({"type": "Point", "coordinates": [1.0, 2.0]})))

    def test_not_a_feature_collection(self):
        with pytest.raises(RunPathError, match="FeatureCollection"):
            parse_run_paths(json.dumps(_feature(LINE)))

    def test_invalid_json(self):
        with pytest.raises(RunPathError, match="Invalid GeoJSON"):
            parse_run_paths("{not json")

    def test_bytes_payload(self):
        assert len(parse_run_paths(_collection(_feature(LINE)).encode())) == 1


class TestSplitRouteName:
    @pytest.mark.parametrize("name,expected", [
        ("Oak Park to Hill School", ("Oak Park", "Hill School")),
        ("Oak Park TO Hill School", ("Oak Park", "Hill School")),
        ("Hill School", ("Hill School", "Hill School")),
        ("Toorak Loop", ("Toorak Loop", "Toorak Loop")),
    ])
    def test_split(self, name, expected):
        assert split_route_name(name) == expected
