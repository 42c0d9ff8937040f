from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


class Kind(Enum):
    WPT = 'wpt'
    SET = 'set'
    RTE = 'rte'
    ARE = 'are'
    TRK = 'trk'
    LDK = 'ldk'
    BIN = 'bin'
    ALL = 'all'

    @classmethod
    def from_name(cls, name: str) -> 'Kind':
        return cls(name.lower().lstrip('.'))


@dataclass(frozen=True)
class MetadataEntry:
    name: str
    value: Any
    type: str = 'string'


@dataclass(frozen=True)
class Metadata:
    """Ordered name -> typed value record. Order is the order found in the file."""
    entries: Tuple[MetadataEntry, ...] = ()

    def __post_init__(self):
        seen = set()
        for entry in self.entries:
            if entry.name in seen:
                raise ValueError(f"Duplicate metadata entry '{entry.name}'")
            seen.add(entry.name)

    def __len__(self):
        return len(self.entries)

    def __iter__(self) -> Iterator[MetadataEntry]:
        return iter(self.entries)

    def __contains__(self, name):
        return any(e.name == name for e in self.entries)

    def __getitem__(self, name):
        for entry in self.entries:
            if entry.name == name:
                return entry.value
        raise KeyError(name)

    def get(self, name, default=None):
        try:
            return self[name]
        except KeyError:
            return default

    def type_of(self, name) -> Optional[str]:
        for entry in self.entries:
            if entry.name == name:
                return entry.type
        return None

    def names(self):
        return [e.name for e in self.entries]

    def to_dict(self) -> Dict[str, Any]:
        return {e.name: e.value for e in self.entries}


@dataclass(frozen=True)
class CellSignal:
    gen: int
    prot: int
    sig: int


@dataclass(frozen=True)
class SatelliteCounts:
    unknown: int = 0
    gps: int = 0
    sbas: int = 0
    glonass: int = 0
    qzss: int = 0
    beidou: int = 0
    galileo: int = 0
    irnss: int = 0

    @property
    def total(self) -> int:
        return (self.unknown + self.gps + self.sbas + self.glonass + self.qzss + self.beidou +
                self.galileo + self.irnss)


@dataclass(frozen=True)
class Location:
    lon: float
    lat: float
    alt: Optional[float] = None
    ts: Optional[float] = None
    acc: Optional[float] = None
    acc_v: Optional[float] = None
    bar: Optional[float] = None
    batt: Optional[int] = None
    cell: Optional[CellSignal] = None
    numsv: Optional[SatelliteCounts] = None

    def to_dict(self) -> Dict[str, Any]:
        # only the fields that were present in the file
        loc = {'lon': self.lon, 'lat': self.lat}
        for key in ('alt', 'ts', 'acc', 'acc_v', 'bar', 'batt'):
            value = getattr(self, key)
            if value is not None:
                loc[key] = value
        if self.cell is not None:
            loc['cell'] = {'gen': self.cell.gen, 'prot': self.cell.prot, 'sig': self.cell.sig}
        if self.numsv is not None:
            sv = self.numsv
            loc['numsv'] = {'tot': sv.total, 'unkn': sv.unknown, 'G': sv.gps, 'S': sv.sbas, 'R': sv.glonass,
                            'J': sv.qzss, 'C': sv.beidou, 'E': sv.galileo, 'I': sv.irnss}
        return loc


@dataclass(frozen=True)
class Waypoint:
    meta: Metadata
    location: Location


@dataclass(frozen=True)
class Segment:
    locations: Tuple[Location, ...] = ()
    meta: Metadata = field(default_factory=Metadata)


@dataclass(frozen=True)
class DataEntry:
    """A file embedded in a container node.

    ``payload`` is the data block as stored, i.e. the main block followed by all
    additional blocks. Its first byte tells the kind of the embedded file and
    ``content`` is the embedded file itself.
    """
    name: str
    kind: Kind
    payload: bytes
    index: int
    uid: int

    @property
    def content(self) -> bytes:
        return self.payload[1:]

    @property
    def size(self) -> int:
        return len(self.payload) - 1


@dataclass(frozen=True)
class ContainerNode:
    path: str
    meta: Metadata = field(default_factory=Metadata)
    nodes: Tuple['ContainerNode', ...] = ()
    files: Tuple[DataEntry, ...] = ()
    order: int = 0

    def walk(self) -> Iterator['ContainerNode']:
        yield self
        for child in self.nodes:
            yield from child.walk()

    def iter_files(self) -> Iterator[Tuple['ContainerNode', DataEntry]]:
        for entry in self.files:
            yield self, entry
        for child in self.nodes:
            yield from child.iter_files()


@dataclass(frozen=True)
class Document:
    kind: Kind
    path: str
    ts: Optional[float] = None
    version: Optional[int] = None
    meta: Metadata = field(default_factory=Metadata)
    location: Optional[Location] = None
    waypoints: Tuple[Waypoint, ...] = ()
    locations: Tuple[Location, ...] = ()
    segments: Tuple[Segment, ...] = ()
    root: Optional[ContainerNode] = None
    raw: Optional[bytes] = None

    @property
    def file(self) -> str:
        return self.path.replace('\\', '/').rsplit('/', 1)[-1]
