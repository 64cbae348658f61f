import pytest
from shapely.geometry import Point

from parcelles import geometry as geo
from parcelles import hashing, validation
from parcelles.enums import ErrorCode
from parcelles.errors import ParcelleError

WORLD = (-180.0, -90.0, 180.0, 90.0)

UNIT_SQUARE = {"type": "Polygon", "coordinates": [[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]]}

# ~111 m x ~111 m near the equator
SMALL_SQUARE = {
    "type": "Polygon",
    "coordinates": [[[0.0, 0.0], [0.001, 0.0], [0.001, 0.001], [0.0, 0.001], [0.0, 0.0]]],
}

# U shape: the vertex average falls inside the notch
U_SHAPE = {
    "type": "Polygon",
    "coordinates": [[
        [0.0, 0.0], [0.003, 0.0], [0.003, 0.003], [0.002, 0.003],
        [0.002, 0.001], [0.001, 0.001], [0.001, 0.003], [0.0, 0.003], [0.0, 0.0],
    ]],
}

BOWTIE = {"type": "Polygon", "coordinates": [[[0, 0], [2, 2], [2, 0], [0, 2], [0, 0]]]}

FLAT = {"type": "Polygon", "coordinates": [[[0, 0], [1, 1], [2, 2], [0, 0]]]}


# ---------- normaliser ----------

def test_polygon_is_wrapped_as_multipolygon():
    assert geo.normalize(UNIT_SQUARE) == {
        "type": "MultiPolygon",
        "coordinates": [[[[0, 0], [0, 1], [1, 1], [1, 0], [0, 0]]]],
    }


def test_normalize_is_idempotent():
    once = geo.normalize(U_SHAPE)
    assert geo.normalize(once) == once


def test_multipolygon_passes_through():
    multi = {
        "type": "MultiPolygon",
        "coordinates": [
            [[[0.0, 0.0], [0.0, 1.0], [1.0, 1.0], [0.0, 0.0]]],
            [[[5.0, 5.0], [5.0, 6.0], [6.0, 6.0], [5.0, 5.0]]],
        ],
    }
    assert geo.normalize(multi) == multi


def test_normalize_drops_z_ordinates():
    poly = {"type": "Polygon", "coordinates": [[[0, 0, 12], [0, 1, 12], [1, 1, 12], [0, 0, 12]]]}

    out = geo.normalize(poly)

    assert out["coordinates"][0][0] == [[0.0, 0.0], [0.0, 1.0], [1.0, 1.0], [0.0, 0.0]]


@pytest.mark.parametrize("gtype", ["Point", "LineString", "GeometryCollection"])
def test_normalize_rejects_other_geometry_types(gtype):
    with pytest.raises(ParcelleError) as exc:
        geo.normalize({"type": gtype, "coordinates": [0, 0]})

    assert exc.value.code == ErrorCode.UNSUPPORTED_GEOMETRY_TYPE
    assert exc.value.details["type"] == gtype
    assert exc.value.details["expected"] == ["Polygon", "MultiPolygon"]


@pytest.mark.parametrize("coords", [
    [[["a", 0], [0, 1], [1, 1], [0, 0]]],
    [[[0], [0, 1], [1, 1], [0, 0]]],
    [[[0, float("nan")], [0, 1], [1, 1], [0, 0]]],
    [],
    None,
])
def test_normalize_rejects_malformed_coordinates(coords):
    with pytest.raises(ParcelleError) as exc:
        geo.normalize({"type": "Polygon", "coordinates": coords})

    assert exc.value.code == ErrorCode.INVALID_GEOMETRY


def test_normalize_rejects_missing_geometry():
    with pytest.raises(ParcelleError) as exc:
        geo.normalize(None)
    assert exc.value.code == ErrorCode.INVALID_GEOMETRY


def test_area_is_geodesic_hectares_and_orientation_free():
    ccw = geo.to_shape(geo.normalize(SMALL_SQUARE))
    ring = SMALL_SQUARE["coordinates"][0]
    cw = geo.to_shape(geo.normalize({"type": "Polygon", "coordinates": [ring[::-1]]}))

    assert geo.area_hectares(ccw) == pytest.approx(1.2309, rel=1e-2)
    assert geo.area_hectares(cw) == pytest.approx(geo.area_hectares(ccw), abs=1e-4)


def test_area_is_zero_for_projected_coordinates():
    projected = {"type": "Polygon", "coordinates": [[[500000, 600000], [500100, 600000], [500100, 600100], [500000, 600000]]]}

    assert geo.area_hectares(geo.to_shape(geo.normalize(projected))) == 0.0


def test_centroid_lies_inside_concave_polygon():
    shp = geo.to_shape(geo.normalize(U_SHAPE))

    c = geo.interior_centroid(shp)

    assert shp.contains(Point(c["lng"], c["lat"]))
    assert not shp.contains(shp.centroid)


def test_centroid_is_rounded_to_display_precision():
    c = geo.interior_centroid(geo.to_shape(geo.normalize(SMALL_SQUARE)), precision=6)

    assert c["lat"] == round(c["lat"], 6)
    assert c["lng"] == round(c["lng"], 6)


def test_reproject_utm_to_wgs84():
    crs = geo.parse_crs("EPSG:32630")
    poly = {"type": "Polygon", "coordinates": [[[500000, 0], [500100, 0], [500100, 100], [500000, 0]]]}

    assert geo.needs_reprojection(crs)
    out = geo.reproject(poly, crs)

    lng, lat = out["coordinates"][0][0]
    assert lng == pytest.approx(-3.0, abs=1e-6)
    assert lat == pytest.approx(0.0, abs=1e-6)


def test_wgs84_needs_no_reprojection():
    assert not geo.needs_reprojection(geo.parse_crs("EPSG:4326"))


# ---------- hasher ----------

def test_hash_ignores_noise_beyond_eighth_decimal():
    a = geo.normalize(SMALL_SQUARE)
    noisy = {
        "type": "Polygon",
        "coordinates": [[[x + 1e-11, y - 1e-11] for x, y in SMALL_SQUARE["coordinates"][0]]],
    }

    assert hashing.feature_hash(a) == hashing.feature_hash(geo.normalize(noisy))


def test_hash_distinguishes_real_differences():
    moved = {
        "type": "Polygon",
        "coordinates": [[[x + 1e-6, y] for x, y in SMALL_SQUARE["coordinates"][0]]],
    }

    assert hashing.feature_hash(geo.normalize(SMALL_SQUARE)) != hashing.feature_hash(geo.normalize(moved))


def test_hash_is_the_same_for_polygon_and_wrapped_multipolygon():
    multi = {"type": "MultiPolygon", "coordinates": [SMALL_SQUARE["coordinates"]]}

    assert hashing.feature_hash(geo.normalize(SMALL_SQUARE)) == hashing.feature_hash(geo.normalize(multi))


def test_hash_keeps_vertex_order():
    ring = SMALL_SQUARE["coordinates"][0]
    rotated = ring[1:-1] + [ring[0], ring[1]]
    other = {"type": "Polygon", "coordinates": [rotated]}

    assert hashing.feature_hash(geo.normalize(SMALL_SQUARE)) != hashing.feature_hash(geo.normalize(other))


def test_canonical_string_layout():
    multi = {
        "type": "MultiPolygon",
        "coordinates": [
            [[[0, 0], [1, 0], [0, 1], [0, 0]], [[0.1, 0.1], [0.2, 0.1], [0.1, 0.2], [0.1, 0.1]]],
            [[[5, 5], [6, 5], [5, 6], [5, 5]]],
        ],
    }

    s = hashing.canonical_string(multi, precision=2)

    assert s == (
        "0.00,0.00 1.00,0.00 0.00,1.00 0.00,0.00"
        "|0.10,0.10 0.20,0.10 0.10,0.20 0.10,0.10"
        ";5.00,5.00 6.00,5.00 5.00,6.00 5.00,5.00"
    )


def test_negative_zero_hashes_like_zero():
    a = {"type": "MultiPolygon", "coordinates": [[[[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [0.0, 0.0]]]]}
    b = {"type": "MultiPolygon", "coordinates": [[[[-0.0, 0.0], [1.0, -0.0], [0.0, 1.0], [0.0, 0.0]]]]}

    assert hashing.feature_hash(a) == hashing.feature_hash(b)


def test_degenerate_geometry_still_hashes():
    flat = geo.normalize(FLAT)

    h = hashing.feature_hash(flat)

    assert len(h) == 64
    assert h == hashing.feature_hash(flat)


def test_file_hash_is_sha256():
    assert hashing.file_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


# ---------- validator ----------

def test_check_geometry_accepts_valid_polygon():
    assert validation.check_geometry(geo.normalize(SMALL_SQUARE)) == []


def test_check_geometry_reports_short_ring():
    short = {"type": "MultiPolygon", "coordinates": [[[[0, 0], [1, 1], [0, 0]]]]}

    errs = validation.check_geometry(short)

    assert len(errs) == 1
    assert "minimum 4" in errs[0]


def test_check_geometry_reports_self_intersection():
    errs = validation.check_geometry(geo.normalize(BOWTIE))

    assert errs and errs[0].startswith("Invalid polygon")


def test_repair_fixes_self_intersecting_polygon():
    repaired = validation.repair_geometry(geo.normalize(BOWTIE))

    assert repaired is not None
    assert repaired["type"] == "MultiPolygon"
    assert validation.check_geometry(repaired) == []
    assert geo.to_shape(repaired).area == pytest.approx(2.0)


def test_repair_gives_up_on_degenerate_polygon():
    assert validation.repair_geometry(geo.normalize(FLAT)) is None


def test_validate_valid_feature():
    out = validation.validate_feature(geo.normalize(SMALL_SQUARE), bounds=WORLD)

    assert out.validation.ok is True
    assert out.validation.errors == []
    assert out.original_valid is True
    assert out.fixed is False
    assert out.sample_coord is None


def test_validate_repairs_and_warns():
    out = validation.validate_feature(geo.normalize(BOWTIE), bounds=WORLD)

    assert out.validation.ok is True
    assert out.original_valid is False
    assert out.fixed is True
    assert ErrorCode.GEOMETRY_FIXED.value in out.validation.warnings
    assert out.geometry != geo.normalize(BOWTIE)


def test_validate_blocks_degenerate_polygon():
    out = validation.validate_feature(geo.normalize(FLAT), bounds=WORLD)

    assert out.validation.ok is False
    assert out.validation.errors
    assert out.fixed is False


def test_validate_blocks_short_ring_without_shape():
    short = {"type": "MultiPolygon", "coordinates": [[[[0, 0], [1, 1], [0, 0]]]]}

    out = validation.validate_feature(short, bounds=WORLD)

    assert out.validation.ok is False
    assert out.shape is None


def test_validate_warns_on_projected_coordinates():
    projected = geo.normalize({
        "type": "Polygon",
        "coordinates": [[[500000, 600000], [500100, 600000], [500100, 600100], [500000, 600000]]],
    })

    out = validation.validate_feature(projected, bounds=WORLD)

    assert out.validation.ok is True
    assert out.validation.requires_confirmation is True
    assert ErrorCode.LIKELY_PROJECTED_COORDINATES.value in out.validation.warnings
    assert out.sample_coord == [500000.0, 600000.0]


def test_validate_uses_configured_region():
    # Côte d'Ivoire-ish box; a plot in France is suspicious there
    ivory_coast = (-9.0, 4.0, -2.0, 11.0)
    paris = geo.normalize({
        "type": "Polygon",
        "coordinates": [[[2.35, 48.85], [2.36, 48.85], [2.36, 48.86], [2.35, 48.85]]],
    })

    out = validation.validate_feature(paris, bounds=ivory_coast)

    assert out.validation.requires_confirmation is True
    assert out.sample_coord == [2.35, 48.85]
