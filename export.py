import base64
import json
import os
import xml.etree.ElementTree as ET
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import xlsxwriter

from apq import ApqError, Log, decode
from landmarks import (ContainerNode, Document, Kind, Location, Metadata, MetadataEntry, Waypoint)
from utils import format_time, path_length

GPX_NS = 'http://www.topografix.com/GPX/1/1'
GPX_CREATOR = 'apq2gpx'

XLSX_HEADERS = ["NAME", "LAT", "LON", "ELE", "TIME", "TYPE", "SOURCE", "GEOMETRY_TYPE", "LENGTH_M", "WKT"]


# --- JSON ---

def _json_value(value):
    if isinstance(value, bytes):
        return base64.b64encode(value).decode('ascii')
    return value


def _meta_to_dict(meta: Metadata) -> Dict[str, Any]:
    return {entry.name: _json_value(entry.value) for entry in meta}


def _waypoint_to_dict(wpt: Waypoint) -> Dict[str, Any]:
    return {'meta': _meta_to_dict(wpt.meta), 'location': wpt.location.to_dict()}


def _node_to_dict(node: ContainerNode) -> Dict[str, Any]:
    return {
        'path': node.path,
        'order': node.order,
        'meta': _meta_to_dict(node.meta),
        'nodes': [_node_to_dict(child) for child in node.nodes],
        'files': [{'name': f.name, 'type': f.kind.value, 'size': f.size, 'order': f.index, 'uid': f.uid,
                   'data': _json_value(f.content)} for f in node.files],
    }


def document_to_dict(doc: Document) -> Dict[str, Any]:
    data = {'ts': doc.ts, 'type': doc.kind.value, 'path': doc.path, 'file': doc.file}
    if doc.version is not None:
        data['version'] = doc.version
    if doc.kind == Kind.LDK:
        data['root'] = _node_to_dict(doc.root)
        return data
    if doc.kind == Kind.BIN:
        data['raw'] = _json_value(doc.raw)
        return data

    data['meta'] = _meta_to_dict(doc.meta)
    if doc.kind == Kind.WPT:
        data['location'] = doc.location.to_dict()
    elif doc.kind == Kind.ARE:
        data['locations'] = [loc.to_dict() for loc in doc.locations]
    else:
        data['waypoints'] = [_waypoint_to_dict(wpt) for wpt in doc.waypoints]
    if doc.kind in (Kind.TRK, Kind.ALL):
        data['segments'] = [{'meta': _meta_to_dict(seg.meta), 'locations': [loc.to_dict() for loc in seg.locations]}
                            for seg in doc.segments]
    return data


def to_json(doc: Document, pretty: bool = False) -> str:
    if pretty:
        return json.dumps(document_to_dict(doc), ensure_ascii=False, indent=2)
    return json.dumps(document_to_dict(doc), ensure_ascii=False, separators=(',', ':'))


# --- GPX ---

def _all_locations(doc: Document) -> Iterator[Location]:
    if doc.location is not None:
        yield doc.location
    for wpt in doc.waypoints:
        yield wpt.location
    yield from doc.locations
    for seg in doc.segments:
        yield from seg.locations


def _gpx_point(parent, tag, location: Location, meta: Optional[Metadata] = None):
    pt = ET.SubElement(parent, tag, lat=f'{location.lat:.7f}', lon=f'{location.lon:.7f}')
    if location.alt is not None:
        ET.SubElement(pt, 'ele').text = f'{location.alt:.3f}'
    time_str = format_time(location.ts)
    if time_str:
        ET.SubElement(pt, 'time').text = time_str
    if meta:
        if meta.get('name'):
            ET.SubElement(pt, 'name').text = str(meta['name'])
        if meta.get('comment'):
            ET.SubElement(pt, 'desc').text = str(meta['comment'])
        if meta.get('icon'):
            ET.SubElement(pt, 'sym').text = str(meta['icon'])
    return pt


def _gpx_set_meta(gpx, doc: Document):
    metadata = ET.SubElement(gpx, 'metadata')
    meta = doc.meta
    # the point itself carries name and description
    if doc.kind != Kind.WPT:
        if meta.get('name'):
            ET.SubElement(metadata, 'name').text = str(meta['name'])
        if meta.get('comment'):
            ET.SubElement(metadata, 'desc').text = str(meta['comment'])
    # earliest location time that can be represented, else the file time
    times = [loc.ts for loc in _all_locations(doc) if format_time(loc.ts)]
    time_str = format_time(min(times) if times else doc.ts)
    if time_str:
        ET.SubElement(metadata, 'time').text = time_str
    if doc.kind != Kind.WPT and meta.get('keywords'):
        ET.SubElement(metadata, 'keywords').text = ', '.join(str(meta['keywords']).split())


def to_gpx(doc: Document, pretty: bool = False) -> str:
    if doc.kind in (Kind.LDK, Kind.BIN):
        raise ValueError(f'Cannot render {doc.kind.value.upper()} data as GPX.')

    gpx = ET.Element('gpx', version="1.1", creator=GPX_CREATOR, xmlns=GPX_NS)
    _gpx_set_meta(gpx, doc)
    default_name = doc.meta.get('name')

    if doc.kind == Kind.WPT:
        _gpx_point(gpx, 'wpt', doc.location, doc.meta)
    for wpt in doc.waypoints:
        _gpx_point(gpx, 'wpt', wpt.location, wpt.meta)

    if doc.kind == Kind.RTE:
        rte = ET.SubElement(gpx, 'rte')
        ET.SubElement(rte, 'name').text = str(default_name or 'Route')
        for wpt in doc.waypoints:
            _gpx_point(rte, 'rtept', wpt.location, wpt.meta)
    elif doc.kind == Kind.ARE:
        rte = ET.SubElement(gpx, 'rte')
        ET.SubElement(rte, 'name').text = str(default_name or 'Area')
        points = list(doc.locations)
        if len(points) > 2:
            points.append(points[0])
        for location in points:
            _gpx_point(rte, 'rtept', location)
    elif doc.kind in (Kind.TRK, Kind.ALL):
        trk = ET.SubElement(gpx, 'trk')
        ET.SubElement(trk, 'name').text = str(default_name or 'Track')
        for seg in doc.segments:
            trkseg = ET.SubElement(trk, 'trkseg')
            for location in seg.locations:
                _gpx_point(trkseg, 'trkpt', location)

    if pretty:
        ET.indent(gpx, space="  ")
    return ET.tostring(gpx, encoding='utf-8', xml_declaration=True).decode('utf-8')


# --- XLSX ---

def _wkt(geom_type, points: List[Location]) -> str:
    if geom_type == "Point":
        return f"POINT ({points[0].lon} {points[0].lat})"
    pts = ", ".join(f"{p.lon} {p.lat}" for p in points)
    if geom_type == "Polygon":
        if points[0].lon != points[-1].lon or points[0].lat != points[-1].lat:
            pts += f", {points[0].lon} {points[0].lat}"
        return f"POLYGON (({pts}))"
    return f"LINESTRING ({pts})"


def _row(name, item_type, source, geom_type, points: List[Location]) -> List[Any]:
    first = points[0]
    length = ''
    if geom_type == "LineString":
        length = round(path_length(points), 1)
    elif geom_type == "Polygon":
        length = round(path_length(points + [first]), 1)
    return [name, first.lat, first.lon, first.alt if first.alt is not None else '',
            format_time(first.ts) or '', item_type, source, geom_type, length, _wkt(geom_type, points)]


def document_rows(doc: Document) -> Iterator[List[Any]]:
    """One row per point, line or polygon of a document."""
    source = doc.file
    doc_name = doc.meta.get('name') or os.path.splitext(source)[0]
    if doc.kind == Kind.WPT:
        yield _row(doc_name, 'Waypoint', source, "Point", [doc.location])
    for idx, wpt in enumerate(doc.waypoints):
        yield _row(wpt.meta.get('name') or f'{doc_name}_{idx + 1}', 'Waypoint', source, "Point", [wpt.location])
    if doc.kind == Kind.RTE and doc.waypoints:
        yield _row(doc_name, 'Route', source, "LineString", [wpt.location for wpt in doc.waypoints])
    if doc.kind == Kind.ARE and doc.locations:
        geom_type = "Polygon" if len(doc.locations) >= 3 else "LineString"
        yield _row(doc_name, 'Area', source, geom_type, list(doc.locations))
    for idx, seg in enumerate(doc.segments):
        if seg.locations:
            yield _row(f'{doc_name} - segment {idx + 1}', 'TrackSegment', source, "LineString", list(seg.locations))


def create_xlsx(docs: Iterable[Document], save_path: str, log: Optional[Log] = None) -> bool:
    log = log if log is not None else Log()
    try:
        workbook = xlsxwriter.Workbook(save_path)
    except xlsxwriter.exceptions.FileCreateError as e:
        log.warning('Failed writing %s: %s', save_path, e)
        return False
    header_format = workbook.add_format({'bold': True, 'bg_color': '#D9EAD3', 'border': 1, 'align': 'center'})
    ws = workbook.add_worksheet("Data")
    ws.write_row(0, 0, XLSX_HEADERS, header_format)
    r = 0
    for doc in docs:
        for row in document_rows(doc):
            r += 1
            ws.write_row(r, 0, row)
    ws.autofit()
    try:
        workbook.close()
        return True
    except xlsxwriter.exceptions.FileCreateError as e:
        log.warning('Failed writing %s: %s', save_path, e)
        return False


# --- container contents ---

def write_node_files(root: ContainerNode, base: str, overwrite: bool = False, log: Optional[Log] = None) -> bool:
    """Write every embedded file of a container to ``base`` + its synthesised name."""
    log = log if log is not None else Log()
    for _, entry in root.iter_files():
        out_file = base + entry.name
        if os.path.exists(out_file) and not overwrite:
            log.warning('File already exists: %s', out_file)
            continue
        log.print('Writing: %s', out_file)
        try:
            with open(out_file, 'wb') as f_out:
                f_out.write(entry.content)
        except OSError as e:
            log.warning('Failed writing %s: %s', out_file, e)
            return False
    return True


def load_nodes(doc: Document, log: Optional[Log] = None) -> Tuple[List[Document], int]:
    """Decode the files embedded in a container document.

    Returns the decoded documents and the number of entries that failed.
    """
    log = log if log is not None else Log()
    datas = []
    errors = 0
    base_dir = os.path.dirname(doc.path)
    for node, entry in doc.root.iter_files():
        if entry.kind == Kind.BIN:
            log.warning('%s:%s%s: binary data, skipped.', doc.path, node.path, entry.name)
            continue
        log.print('Loading: %s:%s%s', doc.path, node.path, entry.name)
        try:
            datas.append(decode(entry.content, entry.kind, rawname=os.path.join(base_dir, entry.name),
                                rawts=doc.ts, log=log))
        except ApqError as e:
            log.error('%s:%s%s: %s', doc.path, node.path, entry.name, e)
            errors += 1
    return datas, errors


# --- merging ---

def merge_meta(meta1: Metadata, meta2: Metadata) -> Metadata:
    """Add the set entries of meta2 to meta1, differing values are joined."""
    merged = {entry.name: entry for entry in meta1}
    for entry in meta2:
        if not entry.value:
            continue
        current = merged.get(entry.name)
        if current is None or not current.value:
            merged[entry.name] = entry
        elif current.value != entry.value:
            merged[entry.name] = MetadataEntry(entry.name, f'{current.value}, {entry.value}', 'string')
    return Metadata(tuple(merged.values()))


def _with_name(meta: Metadata, name: str) -> Metadata:
    entries = tuple(e for e in meta if e.name != 'name')
    return Metadata(entries + (MetadataEntry('name', name, 'string'),))


def combine(docs: Iterable[Document]) -> Document:
    waypoints = []
    segments = []
    comments = []
    times = []
    for doc in docs:
        if doc.kind == Kind.WPT:
            waypoints.append(Waypoint(meta=doc.meta, location=doc.location))
        elif doc.kind == Kind.SET:
            waypoints.extend(Waypoint(meta=merge_meta(doc.meta, wpt.meta), location=wpt.location)
                             for wpt in doc.waypoints)
        elif doc.kind == Kind.ARE:
            n_locations = len(doc.locations)
            for ix, location in enumerate(doc.locations):
                meta = _with_name(Metadata(), f'location {ix + 1}/{n_locations}')
                waypoints.append(Waypoint(meta=merge_meta(doc.meta, meta), location=location))
        elif doc.kind == Kind.RTE:
            n_waypoints = len(doc.waypoints)
            for ix, wpt in enumerate(doc.waypoints):
                meta = wpt.meta
                if not meta.get('name'):
                    meta = _with_name(meta, f'waypoint {ix + 1}/{n_waypoints}')
                waypoints.append(Waypoint(meta=merge_meta(doc.meta, meta), location=wpt.location))
        elif doc.kind == Kind.TRK:
            segments.extend(doc.segments)
        elif doc.kind == Kind.ALL:
            waypoints.extend(doc.waypoints)
            segments.extend(doc.segments)
        else:
            continue
        name = doc.meta.get('name')
        comments.append(doc.file + (f' ({name})' if name else ''))
        if doc.ts is not None:
            times.append(doc.ts)

    meta = Metadata((MetadataEntry('comment', '\n'.join(['Combination of:'] + comments), 'string'),))
    return Document(kind=Kind.ALL, path='merged.all', ts=min(times) if times else None, meta=meta,
                    waypoints=tuple(waypoints), segments=tuple(segments))
