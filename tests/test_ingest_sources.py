import io
import json
import zipfile

import pytest
import shapefile
from pyproj import CRS

from parcelles.config import Settings
from parcelles.enums import ErrorCode, ImportFileType, ParcelleSource
from parcelles.errors import ParcelleError
from parcelles.ingest_sources import (
    GeoJSONSource,
    KmlSource,
    KmzSource,
    ShapefileZipSource,
    source_for,
)

SQUARE = [[0.0, 0.0], [0.001, 0.0], [0.001, 0.001], [0.0, 0.001], [0.0, 0.0]]


def kml_doc(*placemarks: str) -> bytes:
    body = "\n".join(placemarks)
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    {body}
  </Document>
</kml>""".encode("utf-8")


def kml_coords(ring) -> str:
    return " ".join(f"{x},{y}" for x, y in ring)


def kml_polygon(ring, holes=()) -> str:
    inner = "".join(
        f"<innerBoundaryIs><LinearRing><coordinates>{kml_coords(h)}</coordinates></LinearRing></innerBoundaryIs>"
        for h in holes
    )
    return (
        "<Polygon><outerBoundaryIs><LinearRing>"
        f"<coordinates>{kml_coords(ring)}</coordinates>"
        f"</LinearRing></outerBoundaryIs>{inner}</Polygon>"
    )


def shapefile_zip(polygons, names, *, prj: str | None = None, skip=()) -> bytes:
    shp_io, shx_io, dbf_io = io.BytesIO(), io.BytesIO(), io.BytesIO()
    writer = shapefile.Writer(shp=shp_io, shx=shx_io, dbf=dbf_io, shapeType=shapefile.POLYGON)
    writer.field("Nom_prod", "C", size=50)
    for rings, name in zip(polygons, names):
        writer.record(name)
        writer.shape({"type": "Polygon", "coordinates": rings})
    writer.close()

    members = {"plots.shp": shp_io.getvalue(), "plots.shx": shx_io.getvalue(), "plots.dbf": dbf_io.getvalue()}
    if prj is not None:
        members["plots.prj"] = prj.encode("utf-8")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in members.items():
            if name.rsplit(".", 1)[-1] not in skip:
                zf.writestr(name, data)
    return buf.getvalue()


# ---------- GeoJSON ----------

def test_geojson_feature_collection_yields_properties_and_geometry():
    content = json.dumps({
        "type": "FeatureCollection",
        "features": [
            {"type": "Feature", "properties": {"name": "A", "surface": 1.2},
             "geometry": {"type": "Polygon", "coordinates": [SQUARE]}},
            {"type": "Feature", "properties": None, "geometry": None},
        ],
    }).encode()

    records = list(GeoJSONSource(content).records())

    assert len(records) == 2
    assert records[0]["properties"] == {"name": "A", "surface": 1.2}
    assert records[0]["geometry"]["type"] == "Polygon"
    assert records[1] == {"properties": {}, "geometry": None}


def test_geojson_single_feature_is_accepted():
    content = json.dumps({"type": "Feature", "properties": {}, "geometry": {"type": "Polygon", "coordinates": [SQUARE]}}).encode()

    assert len(list(GeoJSONSource(content).records())) == 1


@pytest.mark.parametrize("content", [b"{not json", b"[1, 2]", b'{"type": "Polygon", "coordinates": []}'])
def test_geojson_structural_errors(content):
    with pytest.raises(ParcelleError) as exc:
        list(GeoJSONSource(content).records())

    assert exc.value.code == ErrorCode.VALIDATION_ERROR
    assert exc.value.details["field"] == "file"


def test_geojson_legacy_crs_member_is_reprojected():
    content = json.dumps({
        "type": "FeatureCollection",
        "crs": {"type": "name", "properties": {"name": "EPSG:32630"}},
        "features": [{
            "type": "Feature",
            "properties": {},
            "geometry": {"type": "Polygon", "coordinates": [[[500000, 0], [500100, 0], [500100, 100], [500000, 0]]]},
        }],
    }).encode()

    (rec,) = list(GeoJSONSource(content).records())

    lng, lat = rec["geometry"]["coordinates"][0][0]
    assert lng == pytest.approx(-3.0, abs=1e-6)
    assert lat == pytest.approx(0.0, abs=1e-6)


# ---------- KML / KMZ ----------

def test_kml_placemarks_with_extended_data():
    content = kml_doc(
        f"""<Placemark>
              <name>Parcelle 1</name>
              <ExtendedData>
                <Data name="village"><value>Soubré</value></Data>
                <SchemaData><SimpleData name="Nom_prod">Jean Kamga</SimpleData></SchemaData>
              </ExtendedData>
              {kml_polygon(SQUARE)}
            </Placemark>"""
    )

    (rec,) = list(KmlSource(content).records())

    assert rec["properties"] == {"name": "Parcelle 1", "village": "Soubré", "Nom_prod": "Jean Kamga"}
    assert rec["geometry"] == {"type": "Polygon", "coordinates": [SQUARE]}


def test_kml_multigeometry_becomes_multipolygon_and_keeps_holes():
    hole = [[0.0002, 0.0002], [0.0004, 0.0002], [0.0004, 0.0004], [0.0002, 0.0002]]
    other = [[1.0, 1.0], [1.001, 1.0], [1.001, 1.001], [1.0, 1.0]]
    content = kml_doc(
        f"<Placemark><MultiGeometry>{kml_polygon(SQUARE, holes=[hole])}{kml_polygon(other)}</MultiGeometry></Placemark>"
    )

    (rec,) = list(KmlSource(content).records())

    assert rec["geometry"]["type"] == "MultiPolygon"
    assert rec["geometry"]["coordinates"][0] == [SQUARE, hole]
    assert rec["geometry"]["coordinates"][1] == [other]


def test_kml_altitude_is_kept_until_normalisation():
    content = kml_doc(
        "<Placemark><Polygon><outerBoundaryIs><LinearRing>"
        "<coordinates>0,0,10 1,0,10 1,1,10 0,0,10</coordinates>"
        "</LinearRing></outerBoundaryIs></Polygon></Placemark>"
    )

    (rec,) = list(KmlSource(content).records())

    assert rec["geometry"]["coordinates"][0][0] == [0.0, 0.0, 10.0]


def test_kml_point_is_reported_by_type():
    content = kml_doc("<Placemark><Point><coordinates>1,2</coordinates></Point></Placemark>")

    (rec,) = list(KmlSource(content).records())

    assert rec["geometry"]["type"] == "Point"


def test_kml_invalid_xml():
    with pytest.raises(ParcelleError) as exc:
        list(KmlSource(b"<kml><Placemark>").records())

    assert exc.value.code == ErrorCode.VALIDATION_ERROR


def test_kmz_reads_inner_kml_and_records_kml_source():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("files/icon.png", b"\x89PNG")
        zf.writestr("doc.kml", kml_doc(f"<Placemark>{kml_polygon(SQUARE)}</Placemark>"))

    src = source_for(ImportFileType.KMZ.value, buf.getvalue())

    assert isinstance(src, KmzSource)
    assert src.source == ParcelleSource.KML
    assert len(list(src.records())) == 1


def test_kmz_without_kml_is_structural_error():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("readme.txt", b"nothing here")

    with pytest.raises(ParcelleError) as exc:
        list(KmzSource(buf.getvalue()).records())

    assert exc.value.code == ErrorCode.VALIDATION_ERROR


def test_kmz_inflated_size_is_checked_before_reading():
    padding = "<!-- " + "x" * 20_000 + " -->"
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("doc.kml", kml_doc(padding, f"<Placemark>{kml_polygon(SQUARE)}</Placemark>"))
    content = buf.getvalue()
    assert len(content) < 5_000

    with pytest.raises(ParcelleError) as exc:
        list(source_for("kmz", content, Settings(MAX_FILE_SIZE_BYTES=5_000)).records())

    assert exc.value.code == ErrorCode.LIMIT_EXCEEDED
    assert exc.value.details["resource"] == "file_size"
    assert exc.value.details["actual"] > 20_000
    assert len(list(KmzSource(content, max_unpacked_bytes=50_000).records())) == 1


def test_kmz_not_a_zip():
    with pytest.raises(ParcelleError) as exc:
        list(KmzSource(b"plain bytes").records())

    assert exc.value.code == ErrorCode.VALIDATION_ERROR


# ---------- Shapefile ZIP ----------

def test_shapefile_without_prj_warns_once_and_reads_records():
    content = shapefile_zip([[SQUARE], [[[2.0, 2.0], [2.001, 2.0], [2.001, 2.001], [2.0, 2.0]]]], ["Awa", "Kofi"])
    src = ShapefileZipSource(content)

    records = list(src.records())

    assert [r["properties"]["Nom_prod"] for r in records] == ["Awa", "Kofi"]
    assert all(r["geometry"]["type"] == "Polygon" for r in records)
    assert [w["code"] for w in src.warnings] == [ErrorCode.MISSING_PRJ_ASSUMED_WGS84.value]


def test_shapefile_missing_required_members():
    content = shapefile_zip([[SQUARE]], ["Awa"], skip=("dbf", "shx"))

    with pytest.raises(ParcelleError) as exc:
        list(ShapefileZipSource(content).records())

    assert exc.value.code == ErrorCode.SHAPEFILE_MISSING_REQUIRED
    assert exc.value.details["missing"] == [".dbf", ".shx"]


def test_shapefile_with_projected_prj_is_reprojected():
    utm = [[500000.0, 700000.0], [500100.0, 700000.0], [500100.0, 700100.0], [500000.0, 700100.0], [500000.0, 700000.0]]
    content = shapefile_zip([[utm]], ["Awa"], prj=CRS.from_epsg(32630).to_wkt())
    src = ShapefileZipSource(content)

    (rec,) = list(src.records())

    assert src.warnings == []
    for lng, lat in rec["geometry"]["coordinates"][0]:
        assert lng == pytest.approx(-3.0, abs=0.01)
        assert lat == pytest.approx(6.33, abs=0.01)


def test_shapefile_members_count_towards_unpacked_limit():
    content = shapefile_zip([[SQUARE]] * 20, ["Awa"] * 20)

    with pytest.raises(ParcelleError) as exc:
        list(ShapefileZipSource(content, max_unpacked_bytes=len(content) // 2).records())

    assert exc.value.code == ErrorCode.LIMIT_EXCEEDED
    assert len(list(ShapefileZipSource(content, max_unpacked_bytes=1_000_000).records())) == 20


def test_source_for_maps_every_file_type():
    assert isinstance(source_for("geojson", b"{}"), GeoJSONSource)
    assert isinstance(source_for("kml", b""), KmlSource)
    assert isinstance(source_for("shapefile_zip", b""), ShapefileZipSource)
