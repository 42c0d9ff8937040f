import io

import pytest

from apq import (BufferUnderrun, HEIGHT_NONE, Log, LocationVersion, MetadataVersion, RawReader, StructureError,
                 file_version, location_version, metadata_version)
from apqbuild import f64, i32, i64, u64, u8
from landmarks import Kind


def quiet_log(verbosity=0):
    return Log(verbosity=verbosity, colours=False, stream=io.StringIO())


def test_file_version():
    assert file_version(0x50500003) == 103
    assert file_version(0x50500001) == 101
    assert file_version(3) == 3
    assert file_version(2) == 2


def test_metadata_and_location_versions():
    assert metadata_version(Kind.TRK, 2) == MetadataVersion.LEGACY
    assert metadata_version(Kind.TRK, 3) == MetadataVersion.EXTENDED
    assert metadata_version(Kind.WPT, 2) == MetadataVersion.EXTENDED
    assert metadata_version(Kind.WPT, 101) == MetadataVersion.MODERN
    assert metadata_version(Kind.TRK, 101) == MetadataVersion.MODERN
    assert location_version(2) == LocationVersion.FIXED
    assert location_version(3) == LocationVersion.FIXED
    assert location_version(101) == LocationVersion.TAGGED


def test_primitives():
    raw = i32(-2) + u8(1) + u8(0xff) + u8(0xff) + i64(-5) + u64(0xfffffffffffffff0) + f64(1.25)
    reader = RawReader(raw, quiet_log())

    assert reader.getval('int') == -2
    assert reader.getval('bool') is True
    assert reader.getval('byte') == -1
    assert reader.getval('ubyte') == 0xff
    assert reader.getval('long') == -5
    assert reader.getval('pointer') == 0xfffffffffffffff0
    assert reader.getval('double') == 1.25
    assert reader.remaining() == 0


def test_sentinels():
    """Missing values are stored as magic numbers and read back as None."""
    raw = i32(HEIGHT_NONE) + i64(0) + i32(0) + i32(0) + i32(999999999)
    reader = RawReader(raw, quiet_log())
    assert reader.getval('height') is None
    assert reader.getval('timestamp') is None
    assert reader.getval('accuracy') is None
    assert reader.getval('accuracy2') is None
    assert reader.getval('pressure') is None


def test_scaled_values():
    raw = i32(85000000) + i32(-1234) + i32(1500) + i64(1500000000123) + i32(7) + i32(250) + i32(101325)
    reader = RawReader(raw, quiet_log())
    assert reader.getval('coordinate') == pytest.approx(8.5)
    assert reader.getval('coordinate') == pytest.approx(-0.0001234)
    assert reader.getval('height') == pytest.approx(1.5)
    assert reader.getval('timestamp') == pytest.approx(1500000000.123)
    assert reader.getval('accuracy') == 7
    assert reader.getval('accuracy2') == pytest.approx(2.5)
    assert reader.getval('pressure') == pytest.approx(101.325)


def test_strings_and_raw():
    raw = b'abc' + i32(2) + b'\x01\x02' + 'é'.encode('utf-8')
    reader = RawReader(raw, quiet_log())
    assert reader.getval('string', 3) == 'abc'
    assert reader.getval('int+raw') == b'\x01\x02'
    assert reader.getval('string', 2) == 'é'


def test_invalid_utf8_is_replaced():
    log = quiet_log()
    reader = RawReader(b'a\xffb', log)
    assert reader.getval('string', 3) == 'a�b'
    assert 'WARNING: Invalid UTF-8' in log.stream.getvalue()


def test_underrun():
    reader = RawReader(b'\x00\x00\x00', quiet_log())
    with pytest.raises(BufferUnderrun) as excinfo:
        reader.getval('int')
    assert str(excinfo.value) == 'Need 4 bytes at 0x0000, only 3 left.'
    # nothing consumed
    assert reader.tell() == 0


def test_seek_and_skip():
    reader = RawReader(b'\x00' * 8, quiet_log())
    assert reader.seek(8) == 8
    assert reader.remaining() == 0
    reader.seek(2)
    reader.skip(4)
    assert reader.tell() == 6
    with pytest.raises(StructureError):
        reader.seek(9)
    with pytest.raises(StructureError):
        reader.skip(-7)
    with pytest.raises(StructureError):
        reader.read(-1)


def test_illegal_type():
    reader = RawReader(b'\x00' * 8, quiet_log())
    with pytest.raises(ValueError):
        reader.getval('float')


def test_getvalmulti():
    reader = RawReader(i32(1) + i64(2), quiet_log())
    assert reader.getvalmulti(a='int', b='long') == {'a': 1, 'b': 2}


def test_log_levels():
    log = quiet_log(verbosity=-1)
    log.error('bad %d', 1)
    log.warning('careful')
    log.print('hello')
    log.debug('details')
    assert log.stream.getvalue() == 'ERROR: bad 1\nWARNING: careful\n'

    log = quiet_log(verbosity=2)
    log.debug('details')
    log.trace('more %s', 'details')
    assert log.stream.getvalue() == 'D: details\nT: more details\n'


def test_log_logger_func():
    calls = []

    def logger(msg, error=False, warning=False):
        calls.append((msg, error, warning))

    log = Log(verbosity=0, logger_func=logger, colours=False, stream=io.StringIO())
    log.error('e')
    log.warning('w')
    log.print('p')
    log.debug('not shown')
    assert calls == [('ERROR: e', True, False), ('WARNING: w', False, True), ('p', False, False)]

    messages = []
    log = Log(verbosity=0, logger_func=messages.append, colours=False, stream=io.StringIO())
    log.warning('w')
    assert messages == ['WARNING: w']


def test_log_hexdump():
    log = quiet_log(verbosity=2)
    log.trace_hexdump(b'ABC' + b'\x00' * 14)
    lines = log.stream.getvalue().splitlines()
    assert len(lines) == 2
    assert lines[0].startswith('T: 0x00000000 41 42 43 00')
    assert lines[0].endswith('|ABC.............|')
    assert lines[1].startswith('T: 0x00000010 00')
