# parcelles/ingest_sources.py
from __future__ import annotations
from typing import Iterable, Protocol, Optional, Any, Dict, List
import datetime as dt
import io, json, zipfile
import xml.etree.ElementTree as ET

import shapefile  # pyshp

from parcelles import errors, geometry as geo
from parcelles.config import Settings, settings as default_settings
from parcelles.enums import ErrorCode, ImportFileType, ParcelleSource

REQUIRED_SHAPEFILE_MEMBERS = (".shp", ".shx", ".dbf")


class IngestSource(Protocol):
    source: ParcelleSource
    warnings: List[Dict[str, Any]]

    def records(self) -> Iterable[Dict[str, Any]]:
        """Yield raw features in file order:
        {"properties": flat attribute dict, "geometry": GeoJSON dict or None}
        File-level warnings are appended to `warnings` while iterating.
        Structural problems raise ParcelleError.
        """
        ...


def _json_safe(v: Any) -> Any:
    if isinstance(v, (dt.date, dt.datetime)):
        return v.isoformat()
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    if v is None or isinstance(v, (str, int, float, bool)):
        return v
    return str(v)


def _reprojected(geom: Optional[dict], crs) -> Optional[dict]:
    if geom is None or crs is None or not geo.needs_reprojection(crs):
        return geom
    return geo.reproject(geom, crs)


class GeoJSONSource(IngestSource):
    source = ParcelleSource.GEOJSON

    def __init__(self, content: bytes):
        self._content = content
        self.warnings: List[Dict[str, Any]] = []

    def _load(self) -> dict:
        try:
            data = json.loads(self._content.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise errors.validation_error("file", f"Invalid GeoJSON: {e}")
        if not isinstance(data, dict):
            raise errors.validation_error("file", "GeoJSON must be a Feature or FeatureCollection")
        return data

    @staticmethod
    def _declared_crs(data: dict):
        # legacy GeoJSON (2008) "crs" member; RFC 7946 files are always WGS84
        name = ((data.get("crs") or {}).get("properties") or {}).get("name")
        if not name:
            return None
        try:
            return geo.parse_crs(name)
        except Exception as e:
            raise errors.validation_error("file", f"Unknown CRS {name!r}: {e}")

    def records(self) -> Iterable[Dict[str, Any]]:
        data = self._load()
        gtype = data.get("type")
        if gtype == "FeatureCollection":
            features = data.get("features", []) or []
        elif gtype == "Feature":
            features = [data]
        else:
            raise errors.validation_error("file", "Body must be GeoJSON Feature or FeatureCollection")

        crs = self._declared_crs(data)
        for feat in features:
            feat = feat if isinstance(feat, dict) else {}
            props = feat.get("properties") or {}
            geom = feat.get("geometry")
            yield {
                "properties": {str(k): _json_safe(v) for k, v in props.items()},
                "geometry": _reprojected(geom if isinstance(geom, dict) else None, crs),
            }


class KmlSource(IngestSource):
    source = ParcelleSource.KML

    def __init__(self, content: bytes):
        self._content = content
        self.warnings: List[Dict[str, Any]] = []

    @staticmethod
    def ln(tag: str) -> str:
        return tag.split('}', 1)[-1] if '}' in tag else tag

    @classmethod
    def children(cls, parent: ET.Element, name: str) -> List[ET.Element]:
        return [ch for ch in list(parent) if cls.ln(ch.tag) == name]

    @classmethod
    def descendants(cls, parent: ET.Element, name: str) -> List[ET.Element]:
        return [el for el in parent.iter() if cls.ln(el.tag) == name]

    @staticmethod
    def _number(v: str) -> Any:
        try:
            return float(v)
        except ValueError:
            return v          # left as-is so normalisation reports it

    @classmethod
    def parse_coordinates(cls, text: Optional[str]) -> List[list]:
        """KML "lon,lat[,alt] lon,lat[,alt] ..." to a list of positions."""
        out = []
        for tup in (text or "").split():
            out.append([cls._number(v) for v in tup.split(",") if v != ""])
        return out

    @classmethod
    def _ring(cls, boundary: ET.Element) -> List[list]:
        coords = cls.descendants(boundary, "coordinates")
        return cls.parse_coordinates(coords[0].text if coords else "")

    @classmethod
    def _polygon(cls, poly: ET.Element) -> List[List[list]]:
        rings = []
        for outer in cls.children(poly, "outerBoundaryIs"):
            rings.append(cls._ring(outer))
        for inner in cls.children(poly, "innerBoundaryIs"):
            rings.append(cls._ring(inner))
        return rings

    @classmethod
    def placemark_geometry(cls, pm: ET.Element) -> Optional[dict]:
        polygons = [cls._polygon(p) for p in cls.descendants(pm, "Polygon")]
        if len(polygons) == 1:
            return {"type": "Polygon", "coordinates": polygons[0]}
        if polygons:
            return {"type": "MultiPolygon", "coordinates": polygons}
        # report what was there so the type can be rejected by name
        for kml_type, gj_type in (("Point", "Point"), ("LineString", "LineString"), ("LinearRing", "LineString")):
            if cls.descendants(pm, kml_type):
                return {"type": gj_type, "coordinates": []}
        return None

    @classmethod
    def placemark_properties(cls, pm: ET.Element) -> Dict[str, Any]:
        props: Dict[str, Any] = {}
        for name in ("name", "description"):
            el = cls.children(pm, name)
            if el and (el[0].text or "").strip():
                props[name] = el[0].text.strip()
        for data in cls.descendants(pm, "Data"):
            key = data.get("name")
            values = cls.children(data, "value")
            if key:
                props[key] = (values[0].text or "").strip() if values else None
        for sd in cls.descendants(pm, "SimpleData"):
            key = sd.get("name")
            if key:
                props[key] = (sd.text or "").strip()
        return props

    def records(self) -> Iterable[Dict[str, Any]]:
        try:
            root = ET.fromstring(self._content)
        except ET.ParseError as e:
            raise errors.validation_error("file", f"Invalid KML: {e}")

        for pm in self.descendants(root, "Placemark"):
            yield {
                "properties": self.placemark_properties(pm),
                "geometry": self.placemark_geometry(pm),
            }


def _open_zip(content: bytes, kind: str) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise errors.validation_error("file", f"Invalid {kind} archive: {e}")


def _check_unpacked(zf: zipfile.ZipFile, names: Iterable[str], limit: Optional[int]) -> None:
    """Declared uncompressed size of the members about to be read, against the upload limit."""
    if limit is None:
        return
    total = sum(zf.getinfo(n).file_size for n in names)
    if total > limit:
        raise errors.limit_exceeded("file_size", limit, total)


class KmzSource(IngestSource):
    """ZIP container around a KML document; features are recorded as kml."""

    source = ParcelleSource.KML

    def __init__(self, content: bytes, max_unpacked_bytes: Optional[int] = None):
        self._content = content
        self._max_unpacked = max_unpacked_bytes
        self.warnings: List[Dict[str, Any]] = []

    def _kml_bytes(self) -> bytes:
        with _open_zip(self._content, "KMZ") as zf:
            names = [n for n in zf.namelist() if n.lower().endswith(".kml")]
            if not names:
                raise errors.validation_error("file", "KMZ archive contains no KML document")
            # doc.kml is the conventional root document
            names.sort(key=lambda n: (n.lower().rsplit("/", 1)[-1] != "doc.kml", n))
            _check_unpacked(zf, names[:1], self._max_unpacked)
            return zf.read(names[0])

    def records(self) -> Iterable[Dict[str, Any]]:
        yield from KmlSource(self._kml_bytes()).records()


class ShapefileZipSource(IngestSource):
    source = ParcelleSource.SHAPEFILE

    def __init__(self, content: bytes, max_unpacked_bytes: Optional[int] = None):
        self._content = content
        self._max_unpacked = max_unpacked_bytes
        self.warnings: List[Dict[str, Any]] = []

    @staticmethod
    def _members(zf: zipfile.ZipFile) -> Dict[str, str]:
        """Extension -> member name for the first .shp's dataset."""
        by_stem: Dict[str, Dict[str, str]] = {}
        order: List[str] = []
        for name in zf.namelist():
            if name.endswith("/") or "__MACOSX" in name:
                continue
            stem, dot, ext = name.rpartition(".")
            if not dot:
                continue
            key = stem.lower()
            if key not in by_stem:
                by_stem[key] = {}
                order.append(key)
            by_stem[key]["." + ext.lower()] = name
        shp_stems = [s for s in order if ".shp" in by_stem[s]]
        if shp_stems:
            return by_stem[shp_stems[0]]
        # no .shp at all: report against whatever was there
        return by_stem[order[0]] if order else {}

    def _crs(self, zf: zipfile.ZipFile, members: Dict[str, str]):
        if ".prj" not in members:
            self.warnings.append({
                "code": ErrorCode.MISSING_PRJ_ASSUMED_WGS84.value,
                "message": "No .prj file in archive; coordinates assumed to be WGS84",
                "details": {},
            })
            return None
        wkt = zf.read(members[".prj"]).decode("utf-8", errors="replace").strip()
        try:
            return geo.parse_crs(wkt)
        except Exception as e:
            raise errors.validation_error("file", f"Unreadable .prj projection: {e}")

    def records(self) -> Iterable[Dict[str, Any]]:
        with _open_zip(self._content, "shapefile") as zf:
            members = self._members(zf)
            missing = [ext for ext in REQUIRED_SHAPEFILE_MEMBERS if ext not in members]
            if missing:
                raise errors.missing_shapefile_members(missing)
            used = [members[ext] for ext in REQUIRED_SHAPEFILE_MEMBERS + (".prj",) if ext in members]
            _check_unpacked(zf, used, self._max_unpacked)

            crs = self._crs(zf, members)
            shp, shx, dbf = (io.BytesIO(zf.read(members[ext])) for ext in REQUIRED_SHAPEFILE_MEMBERS)

        try:
            reader = shapefile.Reader(shp=shp, shx=shx, dbf=dbf, encodingErrors="replace")
        except shapefile.ShapefileException as e:
            raise errors.validation_error("file", f"Unreadable shapefile: {e}")

        try:
            for sr in reader.iterShapeRecords():
                geom = None
                if sr.shape.shapeType != shapefile.NULL:
                    geom = dict(sr.shape.__geo_interface__)
                yield {
                    "properties": {k: _json_safe(v) for k, v in sr.record.as_dict().items()},
                    "geometry": _reprojected(geom, crs),
                }
        except shapefile.ShapefileException as e:
            raise errors.validation_error("file", f"Unreadable shapefile: {e}")
        finally:
            reader.close()


SOURCES = {
    ImportFileType.GEOJSON: GeoJSONSource,
    ImportFileType.KML: KmlSource,
    ImportFileType.KMZ: KmzSource,
    ImportFileType.SHAPEFILE_ZIP: ShapefileZipSource,
}


ARCHIVES = (ImportFileType.KMZ, ImportFileType.SHAPEFILE_ZIP)


def source_for(file_type: str, content: bytes, settings: Settings | None = None) -> IngestSource:
    file_type = ImportFileType(file_type)
    if file_type in ARCHIVES:
        limit = (settings or default_settings).MAX_FILE_SIZE_BYTES
        return SOURCES[file_type](content, max_unpacked_bytes=limit)
    return SOURCES[file_type](content)
