import os
import struct
import sys
import time
from enum import IntEnum
from typing import Callable, Optional

import colorama

from landmarks import (CellSignal, ContainerNode, DataEntry, Document, Kind, Location, Metadata,
                       MetadataEntry, SatelliteCounts, Segment, Waypoint)
from utils import safe_name

COLORS_CONSOLE = {
    'E': colorama.Fore.RED,
    'W': colorama.Fore.YELLOW,
    'P': '',
    'D': colorama.Fore.CYAN,
    'T': colorama.Fore.CYAN,
    'o': colorama.Style.RESET_ALL,
}


class Log:
    """Leveled diagnostics for one decode (or one CLI run).

    A message of level E/W/P/D/T is shown when ``verbosity`` is at least
    -2/-1/0/1/2. ``logger_func`` gets a copy of every shown message.
    """
    LEVELS = {'E': -2, 'W': -1, 'P': 0, 'D': 1, 'T': 2}
    PREFIXES = {'E': 'ERROR: ', 'W': 'WARNING: ', 'P': '', 'D': 'D: ', 'T': 'T: '}

    def __init__(self, verbosity: int = 0, logger_func: Optional[Callable] = None, colours: Optional[bool] = None,
                 stream=None):
        self.verbosity = verbosity
        self.logger_func = logger_func
        self.stream = stream
        if colours is None:
            isatty = getattr(self._stream(), 'isatty', None)
            colours = bool(isatty and isatty())
        if colours:
            colorama.just_fix_windows_console()
        self.colours = colours

    def _stream(self):
        return self.stream if self.stream is not None else sys.stderr

    def _log(self, level_char, message, *args):
        if self.verbosity < self.LEVELS.get(level_char, 0):
            return
        log_message = self.PREFIXES.get(level_char, '?') + (message % args if args else message)

        if self.logger_func:
            try:
                self.logger_func(log_message, error=level_char == 'E', warning=level_char == 'W')
            except TypeError:
                self.logger_func(log_message)

        if self.colours:
            log_message = COLORS_CONSOLE.get(level_char, '') + log_message + COLORS_CONSOLE['o']
        print(log_message, file=self._stream())

    def error(self, message, *args):
        self._log('E', message, *args)

    def warning(self, message, *args):
        self._log('W', message, *args)

    def print(self, message, *args):
        self._log('P', message, *args)

    def debug(self, message, *args):
        self._log('D', message, *args)

    def trace(self, message, *args):
        self._log('T', message, *args)

    def trace_hexdump(self, data_bytes):
        if self.verbosity < 2:
            return
        for offs in range(0, len(data_bytes), 16):
            s_bytes = data_bytes[offs:offs + 16]
            hex_parts = []
            for i in range(16):
                if (i % 8) == 0 and i > 0:
                    hex_parts.append(' ')
                hex_parts.append(f'{s_bytes[i]:02x}' if i < len(s_bytes) else '  ')
            hex_str = ' '.join(hex_parts)
            ascii_str = ''.join(chr(b) if 32 <= b <= 126 else '.' for b in s_bytes)
            self.trace(f'0x{offs:08x} {hex_str:<49} |{ascii_str:<16}|')


class ApqError(ValueError):
    pass


class BufferUnderrun(ApqError):
    def __init__(self, offset, wanted, size):
        self.offset = offset
        super().__init__(f'Need {wanted} bytes at 0x{offset:04x}, only {size - offset} left.')


def _hex32(value):
    return f'0x{value & 0xffffffff:08x}'


class MagicMismatch(ApqError):
    def __init__(self, what, observed, expected):
        self.observed = observed
        self.expected = expected
        if isinstance(expected, tuple):
            expected_str = ' or '.join(_hex32(e) for e in expected)
        else:
            expected_str = _hex32(expected)
        super().__init__(f'Unknown {what} magic {_hex32(observed)} (expected {expected_str}).')


class VersionMismatch(ApqError):
    def __init__(self, what, observed, expected):
        self.observed = observed
        self.expected = tuple(expected)
        super().__init__(f"Unknown {what} version {observed} (expected {' or '.join(map(str, self.expected))}).")


class UnsupportedFeature(ApqError):
    pass


class StructureError(ApqError):
    pass


HEIGHT_NONE = -999999999
PRESSURE_NONE = 999999999

MODERN_VERSION_MASK = 0xfff00000
MODERN_VERSION_MARKER = 0x50500000


def file_version(raw_version: int) -> int:
    """0x505000nn headers are the 1xx versions, everything else is taken as is."""
    if (raw_version & MODERN_VERSION_MASK) == MODERN_VERSION_MARKER:
        return (raw_version & 0xff) + 100
    return raw_version


class MetadataVersion(IntEnum):
    LEGACY = 1    # entries only
    EXTENDED = 2  # entries, extended metadata count
    MODERN = 3    # entries, trailing int, extended metadata count


class LocationVersion(IntEnum):
    FIXED = 1
    TAGGED = 2


def metadata_version(kind: Kind, version: int) -> MetadataVersion:
    if version > 100:
        return MetadataVersion.MODERN
    if kind == Kind.TRK and version < 3:
        return MetadataVersion.LEGACY
    return MetadataVersion.EXTENDED


def location_version(version: int) -> LocationVersion:
    return LocationVersion.TAGGED if version > 100 else LocationVersion.FIXED


class RawReader:
    """Big-endian reader over an immutable buffer."""
    TYPE_MAP_STRUCT = {
        'int': ('>i', 4), 'bool': ('>?', 1), 'byte': ('>b', 1), 'ubyte': ('>B', 1),
        'long': ('>q', 8), 'pointer': ('>Q', 8), 'double': ('>d', 8),
    }

    def __init__(self, rawdata: bytes, log: Optional[Log] = None):
        self.rawdata = bytes(rawdata)
        self.rawsize = len(self.rawdata)
        self.rawoffs = 0
        self.log = log if log is not None else Log()

    @property
    def size(self):
        return self.rawsize

    def tell(self):
        return self.rawoffs

    def remaining(self):
        return self.rawsize - self.rawoffs

    def seek(self, offset):
        if offset < 0 or offset > self.rawsize:
            raise StructureError(f'Offset 0x{offset:04x} outside of data (size 0x{self.rawsize:04x}).')
        self.log.trace('seek 0x%04x %+i = 0x%04x', self.rawoffs, offset - self.rawoffs, offset)
        self.rawoffs = offset
        return self.rawoffs

    def skip(self, count):
        return self.seek(self.rawoffs + count)

    def read(self, count):
        if count < 0:
            raise StructureError(f'Illegal size {count} at 0x{self.rawoffs:04x}.')
        if count > self.remaining():
            raise BufferUnderrun(self.rawoffs, count, self.rawsize)
        raw = self.rawdata[self.rawoffs:self.rawoffs + count]
        self.rawoffs += count
        return raw

    def getval(self, val_type, arg=None):
        original_offset = self.rawoffs

        if val_type in self.TYPE_MAP_STRUCT:
            struct_format, num_bytes = self.TYPE_MAP_STRUCT[val_type]
            value = struct.unpack(struct_format, self.read(num_bytes))[0]
        elif val_type == 'int+raw':
            value = self.read(self.getval('int'))
        elif val_type == 'raw':
            value = self.read(arg)
        elif val_type == 'string':
            raw_bytes = self.read(arg)
            try:
                value = raw_bytes.decode('utf-8')
            except UnicodeDecodeError:
                self.log.warning('Invalid UTF-8 string at 0x%04x, replacing bad characters.', original_offset)
                value = raw_bytes.decode('utf-8', errors='replace')
        elif val_type == 'coordinate':
            value = self.getval('int') * 1e-7
        elif val_type == 'height':
            int_val = self.getval('int')
            value = None if int_val == HEIGHT_NONE else int_val * 1e-3
        elif val_type == 'timestamp':
            long_val = self.getval('long')
            value = None if long_val == 0 else long_val * 1e-3
        elif val_type == 'accuracy':
            int_val = self.getval('int')
            value = None if int_val == 0 else int_val
        elif val_type == 'accuracy2':
            int_val = self.getval('int')
            value = None if int_val == 0 else int_val * 1e-2
        elif val_type == 'pressure':
            int_val = self.getval('int')
            value = None if int_val == PRESSURE_NONE else int_val * 1e-3
        else:
            raise ValueError(f"Illegal type '{val_type}'")

        if self.log.verbosity >= 2:
            if isinstance(value, bytes):
                display_val = f'<bytes len={len(value)}>'
            elif isinstance(value, str) and len(value) > 40:
                display_val = value[:37] + '...'
            else:
                display_val = value
            raw_bytes_read = self.rawdata[original_offset:self.rawoffs]
            hex_bytes_str = ' '.join(f'{b:02x}' for b in raw_bytes_read[:16])
            self.log.trace('%-10s at 0x%05x [%02d] %-23s = %s', val_type, original_offset, len(raw_bytes_read),
                           hex_bytes_str, display_val)
        return value

    def getvalmulti(self, **kwargs_types):
        data_dict = {}
        for key, val_type in kwargs_types.items():
            data_dict[key] = self.getval(val_type)
        self.log.debug(' '.join(f'{k}={v!r}' for k, v in data_dict.items()))
        return data_dict


META_TYPES = {-1: 'bool', -2: 'long', -3: 'double', -4: 'int+raw'}


def get_metadata(reader: RawReader, version: MetadataVersion) -> Metadata:
    log = reader.log
    start_offs = reader.tell()
    n_meta_entries = reader.getval('int')
    if n_meta_entries < -1:
        raise StructureError(f'Illegal number of metadata entries {n_meta_entries} at 0x{start_offs:04x}.')
    log.debug('nMetaEntries=%d metadataVersion=%d', n_meta_entries, version)

    entries = []
    positions = {}
    for _ in range(max(n_meta_entries, 0)):
        name_len = reader.getval('int')
        if name_len < 0:
            raise StructureError(f'Illegal metadata name length {name_len} at 0x{reader.tell() - 4:04x}.')
        name = reader.getval('string', name_len)
        data_len_or_type = reader.getval('int')
        if data_len_or_type in META_TYPES:
            data_type = META_TYPES[data_len_or_type]
            value = reader.getval(data_type)
        elif data_len_or_type >= 0:
            data_type = 'string'
            value = reader.getval(data_type, data_len_or_type)
        else:
            raise UnsupportedFeature(f"Illegal metadata entry type {data_len_or_type} for '{name}' "
                                     f"at 0x{reader.tell() - 4:04x}.")
        entry = MetadataEntry(name, value, 'raw' if data_type == 'int+raw' else data_type)
        if name in positions:
            log.warning("Duplicate metadata entry '%s', keeping the last value.", name)
            entries[positions[name]] = entry
        else:
            positions[name] = len(entries)
            entries.append(entry)

    if version == MetadataVersion.MODERN and n_meta_entries != -1:
        reader.getval('int')

    if version >= MetadataVersion.EXTENDED:
        n_meta_ext = reader.getval('int')
        log.debug('nMetaExt=%d', n_meta_ext)
        # -1 in most files, 0 in containers
        if n_meta_ext > 0:
            raise UnsupportedFeature(f'Extended metadata entries not implemented (nMetaExt={n_meta_ext}).')

    for ix, entry in enumerate(entries):
        log.debug(' %2d: %-20s (%-7s) = %r', ix + 1, entry.name, entry.type, entry.value)
    return Metadata(tuple(entries))


# tag: (field, value type, value size)
LOCATION_FIELDS = {
    0x61: ('acc', 'accuracy2', 4),
    0x65: ('alt', 'height', 4),
    0x70: ('bar', 'pressure', 4),
    0x74: ('ts', 'timestamp', 8),
    0x62: ('batt', 'byte', 1),
    0x6e: ('cell', None, 2),
    0x73: ('numsv', None, 8),
    0x76: ('acc_v', 'accuracy2', 4),
}


def get_tagged_fields(reader: RawReader, budget: int):
    """Read (tag, value) pairs of a version 2 location.

    Returns the fields and the unused part of the budget. An unknown tag is
    left unread.
    """
    fields = {}
    while budget > 0:
        tag = reader.getval('ubyte')
        if tag not in LOCATION_FIELDS:
            reader.seek(reader.tell() - 1)
            reader.log.debug('Unknown location field type 0x%02x at 0x%04x.', tag, reader.tell())
            break
        key, val_type, val_size = LOCATION_FIELDS[tag]
        if 1 + val_size > budget:
            raise StructureError(f'Location field 0x{tag:02x} at 0x{reader.tell() - 1:04x} needs {val_size} bytes, '
                                 f'only {budget - 1} left in structure.')
        if key == 'cell':
            gen_prot = reader.getval('ubyte')
            sig = reader.getval('byte')
            gen, prot = divmod(gen_prot, 10)
            fields['cell'] = CellSignal(gen=gen, prot=prot, sig=sig)
        elif key == 'numsv':
            fields['numsv'] = SatelliteCounts(*[reader.getval('ubyte') for _ in range(8)])
        else:
            fields[key] = reader.getval(val_type)
        budget -= 1 + val_size
    return fields, budget


def get_location(reader: RawReader, version: LocationVersion) -> Location:
    log = reader.log
    loc_start_offs = reader.tell()
    struct_size = reader.getval('int')
    if struct_size < 8:
        raise StructureError(f'Location structure size {struct_size} at 0x{loc_start_offs:04x} is too small.')
    fields = {'lon': reader.getval('coordinate'), 'lat': reader.getval('coordinate')}

    if version == LocationVersion.FIXED:
        # lon, lat, height, timestamp, [accuracy], [pressure]
        needed = 20 + (4 if struct_size > 20 else 0) + (4 if struct_size > 24 else 0)
        if struct_size < needed:
            raise StructureError(f'Location structure size {struct_size} at 0x{loc_start_offs:04x} does not fit '
                                 f'its fields ({needed} bytes).')
        fields['alt'] = reader.getval('height')
        fields['ts'] = reader.getval('timestamp')
        if struct_size > 20:
            fields['acc'] = reader.getval('accuracy')
        if struct_size > 24:
            fields['bar'] = reader.getval('pressure')
        residual = struct_size - needed
    else:
        tagged, residual = get_tagged_fields(reader, struct_size - 8)
        fields.update(tagged)

    if residual > 0:
        log.warning('Skipping %d unknown bytes in location at 0x%04x.', residual, reader.tell())
        reader.skip(residual)

    location = Location(**fields)
    log.debug('Loc: lon=%.7f, lat=%.7f, alt=%s, ts=%s', location.lon, location.lat, location.alt, location.ts)
    return location


class ApqFile:
    FILE_VERSIONS = {
        Kind.WPT: (2, 101),
        Kind.SET: (2, 101),
        Kind.RTE: (2, 101),
        Kind.ARE: (2,),
        Kind.TRK: (2, 3, 101),
    }

    LDK_MAGIC_HEADER = 0x4C444B3A  # "LDK:"
    LDK_ARCHIVE_VERSION = 1
    LDK_NODE_MAGIC = 0x00015555
    LDK_NODE_LIST_MAGIC = 0x00025555
    LDK_NODE_TABLE_MAGIC = 0x00045555
    LDK_NODE_DATA_MAGIC = 0x00105555
    LDK_NODE_ADDITIONAL_DATA_MAGIC = 0x00205555
    # node metadata sits behind a 0x20 byte header at the metadata pointer
    LDK_NODE_META_OFFSET = 0x20
    LDK_ENTRY_SIZE = 12
    LDK_TYPE_MAP = {0x65: Kind.WPT, 0x66: Kind.SET, 0x67: Kind.RTE, 0x68: Kind.TRK, 0x69: Kind.ARE}
    MAX_NODE_DEPTH = 64

    def __init__(self, rawdata: bytes, file_type, rawname: Optional[str] = None, rawts: Optional[float] = None,
                 log: Optional[Log] = None):
        self.log = log if log is not None else Log()
        try:
            self.kind = file_type if isinstance(file_type, Kind) else Kind.from_name(file_type)
        except ValueError:
            raise ApqError(f'Unknown file type: {file_type}!') from None
        if self.kind == Kind.ALL:
            raise ApqError(f'Unknown file type: {file_type}!')
        self.rawname = rawname or f'unknown.{self.kind.value}'
        self.rawts = rawts if rawts is not None else time.time()
        self.reader = RawReader(rawdata, self.log)
        self.version = None
        self._visited_nodes = set()

    def parse(self) -> Document:
        self.log.trace('parse %s (%s, %d bytes)', self.rawname, self.kind.value, self.reader.size)
        if self.log.verbosity >= 3:
            self.log.trace_hexdump(self.reader.rawdata)
        document = getattr(self, f'_parse_{self.kind.value}')()
        if self.kind != Kind.LDK and self.reader.remaining() > 0:
            self.log.debug('Unused data, done at 0x%04x/0x%04x.', self.reader.tell(), self.reader.size)
        return document

    def _document(self, **payload) -> Document:
        return Document(kind=self.kind, path=self.rawname, ts=self.rawts, version=self.version, **payload)

    def _check_header(self, *expected_file_versions):
        raw_version = self.reader.getval('int')
        header_size = self.reader.getval('int')
        version = file_version(raw_version)
        self.log.debug('fileVersion=%d headerSize=0x%x', version, header_size)
        if version not in expected_file_versions:
            raise VersionMismatch(f'{self.kind.value.upper()} file', version, expected_file_versions)
        self.version = version
        return header_size

    def _read_header(self):
        header_size = self._check_header(*self.FILE_VERSIONS[self.kind])
        if self.version > 100:
            # technical metadata of the application, not interesting
            self._get_metadata()
        else:
            if header_size < 0:
                raise StructureError(f'Illegal header size {header_size}.')
            self.reader.skip(header_size)

    def _get_metadata(self) -> Metadata:
        return get_metadata(self.reader, metadata_version(self.kind, self.version))

    def _get_location(self) -> Location:
        return get_location(self.reader, location_version(self.version))

    def _get_count(self, what):
        count = self.reader.getval('int')
        if count < 0:
            raise StructureError(f'Illegal number of {what} {count} at 0x{self.reader.tell() - 4:04x}.')
        self.log.debug('n%s=%d', what.capitalize(), count)
        return count

    def _get_waypoints(self):
        return tuple(Waypoint(meta=self._get_metadata(), location=self._get_location())
                     for _ in range(self._get_count('waypoints')))

    def _get_locations(self):
        return tuple(self._get_location() for _ in range(self._get_count('locations')))

    def _get_segment(self) -> Segment:
        if self.version == 2:
            marker = self.reader.getval('int')
            self.log.debug('segment marker=%d', marker)
            meta = Metadata()
        else:
            meta = self._get_metadata()
        return Segment(locations=self._get_locations(), meta=meta)

    def _get_segments(self):
        return tuple(self._get_segment() for _ in range(self._get_count('segments')))

    def _parse_wpt(self):
        self._read_header()
        meta = self._get_metadata()
        return self._document(meta=meta, location=self._get_location())

    def _parse_set(self):
        self._read_header()
        meta = self._get_metadata()
        return self._document(meta=meta, waypoints=self._get_waypoints())

    _parse_rte = _parse_set

    def _parse_are(self):
        self._read_header()
        meta = self._get_metadata()
        return self._document(meta=meta, locations=self._get_locations())

    def _parse_trk(self):
        self._read_header()
        meta = self._get_metadata()
        waypoints = self._get_waypoints()
        return self._document(meta=meta, waypoints=waypoints, segments=self._get_segments())

    def _parse_bin(self):
        return self._document(raw=self.reader.read(self.reader.size))

    def _parse_ldk(self):
        hdr = self.reader.getvalmulti(magic='int', archVersion='int', rootOffset='pointer',
                                      res1='long', res2='long', res3='long', res4='long')
        if hdr['magic'] != self.LDK_MAGIC_HEADER:
            raise MagicMismatch('LDK', hdr['magic'], self.LDK_MAGIC_HEADER)
        if hdr['archVersion'] != self.LDK_ARCHIVE_VERSION:
            raise VersionMismatch('LDK archive', hdr['archVersion'], (self.LDK_ARCHIVE_VERSION,))

        self._visited_nodes = set()
        root = self._get_node(hdr['rootOffset'])
        self._debug_dump_node(root)
        return self._document(root=root)

    def _debug_dump_node(self, node):
        if self.log.verbosity < 1:
            return
        for n in node.walk():
            self.log.debug('%s: %s', self.rawname, n.path)
            for f in n.files:
                self.log.debug('%s: %s%s (%d bytes)', self.rawname, n.path, f.name, f.size)

    def _get_entries(self, count):
        entries = []
        for ix in range(count):
            d = self.reader.getvalmulti(offset='pointer', uid='int')
            entries.append((ix, d['offset'], d['uid']))
        return entries

    def _get_node(self, offset, parent_path=None, uid=None, order=0, depth=0):
        if depth > self.MAX_NODE_DEPTH:
            raise StructureError(f'LDK nodes nested deeper than {self.MAX_NODE_DEPTH} levels at 0x{offset:04x}.')
        if offset in self._visited_nodes:
            raise StructureError(f'LDK node at 0x{offset:04x} is referenced twice.')
        self._visited_nodes.add(offset)

        self.log.debug('LDK node at 0x%04x', offset)
        self.reader.seek(offset)
        hdr = self.reader.getvalmulti(magic='int', flags='int', metaOffset='pointer', res1='long')
        if hdr['magic'] != self.LDK_NODE_MAGIC:
            raise MagicMismatch('LDK node', hdr['magic'], self.LDK_NODE_MAGIC)

        entries_offset = self.reader.tell()
        self.reader.seek(hdr['metaOffset'] + self.LDK_NODE_META_OFFSET)
        meta = get_metadata(self.reader, MetadataVersion.EXTENDED)
        self.reader.seek(entries_offset)

        if parent_path is None:
            path = '/'
        else:
            name = meta.get('name')
            # any metadata type can be stored under 'name', only a string names a folder
            if isinstance(name, str) and name:
                path = parent_path + f'{safe_name(name)}/'
            else:
                path = parent_path + f'UID{uid & 0xffffffff:08X}/'

        node_entries_magic = self.reader.getval('int')
        self.log.debug('LDK node path=%s nodeEntriesMagic=0x%08x', path, node_entries_magic & 0xffffffff)
        if node_entries_magic == self.LDK_NODE_LIST_MAGIC:
            lst = self.reader.getvalmulti(nTotal='int', nChild='int', nData='int', addOffset='pointer')
            n_child, n_data = lst['nChild'], lst['nData']
            n_empty = lst['nTotal'] - n_child - n_data
            if lst['addOffset']:
                # TODO: follow the additional entries list once a sample file uses it
                self.log.warning('LDK node %s: additional entries at 0x%04x are not supported, ignored.',
                                 path, lst['addOffset'])
        elif node_entries_magic == self.LDK_NODE_TABLE_MAGIC:
            tbl = self.reader.getvalmulti(nChild='int', nData='int')
            n_child, n_data, n_empty = tbl['nChild'], tbl['nData'], 0
        else:
            raise MagicMismatch('LDK node entries', node_entries_magic,
                                (self.LDK_NODE_LIST_MAGIC, self.LDK_NODE_TABLE_MAGIC))
        if n_child < 0 or n_data < 0 or n_empty < 0:
            raise StructureError(f'LDK node {path}: illegal entry counts child={n_child} data={n_data} '
                                 f'empty={n_empty}.')

        child_entries = self._get_entries(n_child)
        self.reader.skip(n_empty * self.LDK_ENTRY_SIZE)
        data_entries = self._get_entries(n_data)

        nodes = tuple(self._get_node(child_offset, path, child_uid, ix, depth + 1)
                      for ix, child_offset, child_uid in sorted(child_entries))
        files = tuple(self._get_file(path, ix, data_offset, data_uid)
                      for ix, data_offset, data_uid in sorted(data_entries))
        return ContainerNode(path=path, meta=meta, nodes=nodes, files=files, order=order)

    def _get_file(self, path, ix, offset, uid) -> DataEntry:
        payload = self._get_node_data(offset)
        if not payload:
            raise StructureError(f'Empty LDK data block at 0x{offset:04x}.')
        kind = self.LDK_TYPE_MAP.get(payload[0], Kind.BIN)
        base = os.path.splitext(os.path.basename(self.rawname))[0]
        name = f"{base}{path.replace('/', '_')}UID{uid & 0xffffffff:08X}.{kind.value}"
        self.log.debug('LDK file %s (%s, %d bytes)', name, kind.value, len(payload) - 1)
        return DataEntry(name=name, kind=kind, payload=payload, index=ix, uid=uid)

    def _get_node_data(self, offset) -> bytes:
        self.reader.seek(offset)
        hdr = self.reader.getvalmulti(magic='int', flags='int', totalSize='long', size='long', addOffset='pointer')
        if hdr['magic'] != self.LDK_NODE_DATA_MAGIC:
            raise MagicMismatch('LDK data', hdr['magic'], self.LDK_NODE_DATA_MAGIC)

        data_chunks = [self.reader.getval('raw', hdr['size'])]
        add_offset = hdr['addOffset']
        visited = set()
        while add_offset:
            if add_offset in visited:
                raise StructureError(f'LDK additional data block at 0x{add_offset:04x} is referenced twice.')
            visited.add(add_offset)
            self.reader.seek(add_offset)
            add_hdr = self.reader.getvalmulti(magic='int', size='long', addOffset='pointer')
            if add_hdr['magic'] != self.LDK_NODE_ADDITIONAL_DATA_MAGIC:
                raise MagicMismatch('LDK additional data', add_hdr['magic'], self.LDK_NODE_ADDITIONAL_DATA_MAGIC)
            data_chunks.append(self.reader.getval('raw', add_hdr['size']))
            add_offset = add_hdr['addOffset']

        data = b''.join(data_chunks)
        if len(data) != hdr['totalSize']:
            self.log.debug('LDK data at 0x%04x: total size %d, got %d bytes.', offset, hdr['totalSize'], len(data))
        return data


AQ_TYPES = ('wpt', 'set', 'rte', 'are', 'trk', 'ldk')


def decode(rawdata: bytes, file_type, rawname: Optional[str] = None, rawts: Optional[float] = None,
           log: Optional[Log] = None) -> Document:
    return ApqFile(rawdata, file_type, rawname=rawname, rawts=rawts, log=log).parse()


def decode_entry(entry: DataEntry, ts: Optional[float] = None, log: Optional[Log] = None) -> Document:
    """Decode a file embedded in a container."""
    return decode(entry.content, entry.kind, rawname=entry.name, rawts=ts, log=log)


def load(path: str, log: Optional[Log] = None) -> Document:
    log = log if log is not None else Log()
    ext = os.path.splitext(path)[1].lower().lstrip('.')
    if ext not in AQ_TYPES:
        raise ApqError(f'Unknown file type: {path}!')
    with open(path, 'rb') as f_in:
        rawdata = f_in.read()
    log.trace("Read '%s': %d bytes.", path, len(rawdata))
    return decode(rawdata, ext, rawname=path, rawts=os.path.getmtime(path), log=log)
