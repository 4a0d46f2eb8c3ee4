"""
Reader for Krita layer tile streams.

A stream is five ``KEY VALUE`` header lines followed by ``DATA`` tile
records, each ``left,top,flag,length`` plus ``length`` payload bytes::

    VERSION 2
    TILEWIDTH 64
    TILEHEIGHT 64
    PIXELSIZE 4
    DATA 1
    0,0,LZF,1234
    <1234 bytes>
"""

import logging
from dataclasses import dataclass

from kra_errors import TileStreamError
from kra_lzf import expand_tile

logger = logging.getLogger(__name__)

NEWLINE = 0x0A
HEADER_KEYS = ('VERSION', 'TILEWIDTH', 'TILEHEIGHT', 'PIXELSIZE', 'DATA')


@dataclass
class Bounds:
    """Tile-space extents of a layer. Right/bottom are exclusive."""
    top: int = 0
    left: int = 0
    bottom: int = 0
    right: int = 0

    @property
    def width(self):
        return self.right - self.left

    @property
    def height(self):
        return self.bottom - self.top

    def contains(self, left, top, width, height):
        return (self.left <= left and left + width <= self.right
                and self.top <= top and top + height <= self.bottom)

    def as_array(self):
        return [self.top, self.left, self.bottom, self.right]


class Tile:
    """One compressed tile. Decoding never mutates the stored payload."""

    __slots__ = ('_left', '_top', '_compressed_data')

    def __init__(self, left, top, compressed_data):
        self._left = left
        self._top = top
        self._compressed_data = bytes(compressed_data)

    @property
    def left(self): return self._left

    @property
    def top(self): return self._top

    @property
    def compressed_data(self): return self._compressed_data

    def expand(self, expanded_size):
        return expand_tile(self._compressed_data, expanded_size)

    def __repr__(self):
        return f"Tile(left={self._left}, top={self._top}, size={len(self._compressed_data)})"


# ==============================================================================
# Cursor
# ==============================================================================

class LayerDataReader:
    def __init__(self, data):
        self.data = bytes(data)
        self.cursor = 0
        self.length = len(self.data)

    def is_eof(self): return self.cursor >= self.length
    def tell(self): return self.cursor

    def read_line(self, name="Line"):
        end = self.data.find(b'\n', self.cursor)
        if end == -1: raise TileStreamError(f"EOF while reading {name} at offset 0x{self.cursor:08X}")
        raw = self.data[self.cursor:end]
        self.cursor = end + 1
        try:
            return raw.decode('ascii')
        except UnicodeDecodeError:
            raise TileStreamError(f"{name} at offset 0x{end - len(raw):08X} is not ASCII: {raw[:32]!r}") from None

    def read_bytes(self, length, name="Bytes"):
        if length < 0: raise TileStreamError(f"negative length {length} for {name}")
        if self.cursor + length > self.length:
            raise TileStreamError(
                f"EOF reading {name}: need {length} bytes at 0x{self.cursor:08X}, {self.length - self.cursor} left"
            )
        raw = self.data[self.cursor:self.cursor + length]
        self.cursor += length
        return raw

    def peek_bytes(self, length):
        return self.data[self.cursor:self.cursor + length]


# ==============================================================================
# Parsing
# ==============================================================================

class TileStream:
    def __init__(self, version, tile_width, tile_height, pixel_size, tiles):
        self.version = version
        self.tile_width = tile_width
        self.tile_height = tile_height
        self.pixel_size = pixel_size
        self.tiles = tiles
        self.bounds = tile_bounds(tiles, tile_width, tile_height)

    @property
    def decompressed_length(self):
        return self.pixel_size * self.tile_width * self.tile_height


def read_header(reader):
    """[Helper] Parse the five KEY VALUE header lines."""
    headers = {}
    for i in range(len(HEADER_KEYS)):
        line = reader.read_line(f"Header[{i}]")
        parts = line.split(' ')
        if len(parts) != 2:
            raise TileStreamError(f"malformed header line {i}: {line!r}")
        key, value = parts
        if key not in HEADER_KEYS:
            raise TileStreamError(f"unknown header key {key!r}")
        if key in headers:
            raise TileStreamError(f"duplicate header key {key!r}")
        try:
            headers[key] = int(value)
        except ValueError:
            raise TileStreamError(f"header {key} has non-integer value {value!r}") from None

    missing = [k for k in HEADER_KEYS if k not in headers]
    if missing: raise TileStreamError(f"missing header keys: {', '.join(missing)}")
    if headers['TILEWIDTH'] <= 0 or headers['TILEHEIGHT'] <= 0 or headers['PIXELSIZE'] <= 0:
        raise TileStreamError(f"invalid tile geometry {headers}")
    if headers['DATA'] < 0:
        raise TileStreamError(f"negative tile count {headers['DATA']}")
    return headers


def read_tile_record(reader, idx):
    line = reader.read_line(f"Tile[{idx}]")
    fields = line.split(',')
    if len(fields) != 4:
        raise TileStreamError(f"tile record {idx} has {len(fields)} fields: {line!r}")
    try:
        left = int(fields[0])
        top = int(fields[1])
        length = int(fields[3])
    except ValueError:
        raise TileStreamError(f"tile record {idx} is not numeric: {line!r}") from None
    # fields[2] is the compression name, the payload flag byte is authoritative
    payload = reader.read_bytes(length, f"Tile[{idx}].Payload")
    return left, top, payload


def tile_bounds(tiles, tile_width, tile_height):
    """Union of every tile rectangle; empty Bounds when there are no tiles."""
    if not tiles:
        return Bounds()
    return Bounds(
        top=min(t.top for t in tiles),
        left=min(t.left for t in tiles),
        bottom=max(t.top + tile_height for t in tiles),
        right=max(t.left + tile_width for t in tiles),
    )


def parse_layer_data(data):
    """Parse a whole layer payload into a TileStream without decoding tiles."""
    reader = LayerDataReader(data)
    headers = read_header(reader)

    tiles = []
    for idx in range(headers['DATA']):
        left, top, payload = read_tile_record(reader, idx)
        if not payload:
            continue
        tiles.append(Tile(left, top, payload))

    if not reader.is_eof():
        logger.debug(f"[Info] {reader.length - reader.tell()} trailing bytes after {headers['DATA']} tiles")

    return TileStream(
        version=headers['VERSION'],
        tile_width=headers['TILEWIDTH'],
        tile_height=headers['TILEHEIGHT'],
        pixel_size=headers['PIXELSIZE'],
        tiles=tiles,
    )
