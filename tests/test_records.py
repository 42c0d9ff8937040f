import io
import os

import pytest

from apq import ApqError, BufferUnderrun, Log, VersionMismatch, decode, load
from apqbuild import (header, i32, location_v1, location_v2, metadata, record, sample_waypoint, tag_elevation,
                      tag_time)
from landmarks import Kind


def quiet_log(verbosity=0):
    return Log(verbosity=verbosity, colours=False, stream=io.StringIO())


def test_wpt_legacy():
    doc = decode(sample_waypoint(), 'wpt', rawname='dir/peak.wpt', rawts=1.0, log=quiet_log())
    assert doc.kind == Kind.WPT
    assert doc.version == 2
    assert doc.path == 'dir/peak.wpt'
    assert doc.file == 'peak.wpt'
    assert doc.ts == 1.0
    assert doc.meta.to_dict() == {'name': 'Peak', 'comment': 'nice view', 'icon': 'summit'}
    assert doc.location.lat == pytest.approx(46.5, abs=1e-7)
    assert doc.location.alt == pytest.approx(2500)
    assert doc.waypoints == ()


def test_wpt_modern():
    raw = record(101, [('name', 'Peak')], location_v2(7.5, 46.5, tag_elevation(2500) + tag_time(1600000000)))
    doc = decode(raw, Kind.WPT, log=quiet_log())
    assert doc.version == 101
    # technical metadata of the header is not part of the document
    assert doc.meta.names() == ['name']
    assert doc.location.alt == pytest.approx(2500)
    assert doc.location.ts == pytest.approx(1600000000)
    assert doc.path == 'unknown.wpt'


def set_body(loc):
    return (i32(2) + metadata([('name', 'A')], 2) + loc(1.0, 2.0) +
            metadata([('name', 'B'), ('icon', 'flag')], 2) + loc(3.0, 4.0))


@pytest.mark.parametrize('kind', ['set', 'rte'])
def test_set_and_route_legacy(kind):
    doc = decode(record(2, [('name', 'Collection')], set_body(location_v1)), kind, log=quiet_log())
    assert doc.kind == Kind.from_name(kind)
    assert doc.meta['name'] == 'Collection'
    assert [w.meta['name'] for w in doc.waypoints] == ['A', 'B']
    assert doc.waypoints[1].meta['icon'] == 'flag'
    assert doc.waypoints[1].location.lon == pytest.approx(3.0, abs=1e-7)


def test_set_modern():
    body = i32(1) + metadata([('name', 'A')], 3) + location_v2(1.0, 2.0, tag_elevation(5))
    doc = decode(record(101, [('name', 'S')], body), 'set', log=quiet_log())
    assert len(doc.waypoints) == 1
    assert doc.waypoints[0].location.alt == pytest.approx(5)


def test_area():
    body = i32(3) + location_v1(0, 0) + location_v1(1, 0) + location_v1(1, 1)
    doc = decode(record(2, [('name', 'Field')], body), 'are', log=quiet_log())
    assert doc.kind == Kind.ARE
    assert len(doc.locations) == 3
    assert doc.locations[2].lat == pytest.approx(1, abs=1e-7)


def test_area_modern_rejected():
    raw = record(101, [], i32(0))
    with pytest.raises(VersionMismatch) as excinfo:
        decode(raw, 'are', log=quiet_log())
    assert excinfo.value.observed == 101
    assert excinfo.value.expected == (2,)


def test_wpt_version_mismatch():
    raw = header(3) + metadata([], 2) + location_v1(0, 0)
    with pytest.raises(VersionMismatch) as excinfo:
        decode(raw, 'wpt', log=quiet_log())
    assert str(excinfo.value) == 'Unknown WPT file version 3 (expected 2 or 101).'


def test_track_v2():
    body = (i32(1) + metadata([('name', 'start')], 1) + location_v1(1, 1) +
            i32(2) +
            i32(0) + i32(2) + location_v1(1, 1, ts=10) + location_v1(1.001, 1, ts=20) +
            i32(-1) + i32(1) + location_v1(2, 2, ts=30))
    doc = decode(record(2, [('name', 'Hike')], body, meta_version=1), 'trk', log=quiet_log())
    assert doc.meta['name'] == 'Hike'
    assert [w.meta['name'] for w in doc.waypoints] == ['start']
    assert [len(s.locations) for s in doc.segments] == [2, 1]
    assert doc.segments[0].locations[1].ts == pytest.approx(20)
    assert len(doc.segments[0].meta) == 0


def test_track_v3():
    body = (i32(0) + i32(1) + metadata([('color', 'red')], 2) + i32(2) +
            location_v1(1, 1, acc=4) + location_v1(2, 2, acc=4))
    doc = decode(record(3, [('name', 'Ride')], body), 'trk', log=quiet_log())
    assert doc.version == 3
    assert doc.waypoints == ()
    assert doc.segments[0].meta['color'] == 'red'
    assert doc.segments[0].locations[0].acc == 4


def test_track_modern():
    body = (i32(0) + i32(1) + metadata(None, 3) + i32(2) +
            location_v2(1, 1, tag_time(100)) + location_v2(2, 2, tag_time(200)))
    doc = decode(record(101, [('name', 'Run')], body), 'trk', log=quiet_log())
    assert doc.version == 101
    assert [loc.ts for loc in doc.segments[0].locations] == [pytest.approx(100), pytest.approx(200)]


def test_unused_data_is_reported_not_fatal():
    log = quiet_log(verbosity=1)
    doc = decode(sample_waypoint() + b'\x00' * 7, 'wpt', log=log)
    assert doc.meta['name'] == 'Peak'
    assert 'Unused data' in log.stream.getvalue()


def test_truncated():
    with pytest.raises(BufferUnderrun):
        decode(sample_waypoint()[:-3], 'wpt', log=quiet_log())


def test_negative_count():
    with pytest.raises(ApqError):
        decode(record(2, [], i32(-3)), 'set', log=quiet_log())


def test_unknown_type():
    with pytest.raises(ApqError):
        decode(b'', 'xyz', log=quiet_log())
    with pytest.raises(ApqError):
        decode(b'', Kind.ALL, log=quiet_log())


def test_bin_keeps_raw_bytes():
    doc = decode(b'\x01\x02\x03', 'bin', log=quiet_log())
    assert doc.raw == b'\x01\x02\x03'


def test_load(tmp_path):
    path = tmp_path / 'peak.WPT'
    path.write_bytes(sample_waypoint())
    doc = load(str(path), log=quiet_log())
    assert doc.kind == Kind.WPT
    assert doc.path == str(path)
    assert doc.ts == pytest.approx(os.path.getmtime(path))

    other = tmp_path / 'notes.txt'
    other.write_bytes(b'')
    with pytest.raises(ApqError):
        load(str(other), log=quiet_log())
