"""
Plane reassembly and bounding-box cropping.

Krita stores every tile planar (all bytes of channel 0, then channel 1, ...)
in B,G,R,A order. Reassembly interleaves the planes into R,G,B,A pixels and
places each tile on the layer canvas.
"""

import logging

import numpy as np
from PIL import Image

from kra_errors import CorruptTileError, ExtractError, TileDecodeError

logger = logging.getLogger(__name__)

ALPHA_CHANNEL = 3


def channel_permutation(pixel_size, bytes_per_channel):
    """Source plane for each output byte slot: blue block <-> red block.

    >>> channel_permutation(4, 1)
    [2, 1, 0, 3]
    >>> channel_permutation(8, 2)
    [4, 5, 2, 3, 0, 1, 6, 7]
    """
    perm = list(range(pixel_size))
    head = perm[:bytes_per_channel]
    tail = perm[bytes_per_channel * 2:]
    n = min(len(head), len(tail))
    perm[:n], perm[bytes_per_channel * 2:bytes_per_channel * 2 + n] = tail[:n], head[:n]
    return perm


def interleave_tile(raw, pixel_size, tile_width, tile_height, permutation):
    """[Algorithm] Planar -> interleaved: out[p*ps + k] = planar[perm[k]*area + p].

    Returns a (tile_height, tile_width, pixel_size) uint8 array. A short
    decode is zero-filled up to the full tile.
    """
    area = tile_width * tile_height
    expected = pixel_size * area
    planar = np.zeros(expected, dtype=np.uint8)
    if raw:
        chunk = np.frombuffer(raw, dtype=np.uint8)[:expected]
        planar[:len(chunk)] = chunk
    planes = planar.reshape((pixel_size, area))
    interleaved = planes[permutation].T
    return np.ascontiguousarray(interleaved).reshape((tile_height, tile_width, pixel_size))


def compose_tiles(tiles, bounds, pixel_size, tile_width, tile_height, bytes_per_channel):
    """Decode every tile and write it into a layer-sized canvas.

    Canvas is (bounds.height, bounds.width, pixel_size), which is a whole
    number of tiles when every tile sits on the tile grid. Bounds are the
    union of tile rectangles, so off-grid tiles still fit; where two of them
    overlap the later one wins.
    """
    if pixel_size < 4 * bytes_per_channel:
        raise ExtractError(f"pixel size {pixel_size} too small for {bytes_per_channel}-byte RGBA")
    if any(not bounds.contains(tile.left, tile.top, tile_width, tile_height) for tile in tiles):
        raise ExtractError(f"tiles fall outside layer bounds {bounds}")

    canvas = np.zeros((bounds.height, bounds.width, pixel_size), dtype=np.uint8)

    decompressed_length = pixel_size * tile_width * tile_height
    permutation = channel_permutation(pixel_size, bytes_per_channel)

    for tile in tiles:
        try:
            raw = tile.expand(decompressed_length)
        except TileDecodeError as e:
            raise CorruptTileError(
                f"tile ({tile.left},{tile.top}) failed to decode: {e}", tile.left, tile.top
            ) from e

        pixels = interleave_tile(raw, pixel_size, tile_width, tile_height, permutation)

        rel_top = tile.top - bounds.top
        rel_left = tile.left - bounds.left
        canvas[rel_top:rel_top + tile_height, rel_left:rel_left + tile_width] = pixels

    return canvas


def crop_to_content(pixels, bytes_per_channel=1):
    """[Algorithm] Trim to pixels whose alpha is > 0.

    Returns (cropped, (left, top, right, bottom)) with right/bottom
    exclusive. No painted pixel gives a 0x0 array and all-zero offsets.
    """
    start = ALPHA_CHANNEL * bytes_per_channel
    alpha = pixels[:, :, start:start + bytes_per_channel]
    painted = np.any(alpha != 0, axis=2)

    rows = np.flatnonzero(painted.any(axis=1))
    cols = np.flatnonzero(painted.any(axis=0))
    if rows.size == 0:
        return pixels[0:0, 0:0].copy(), (0, 0, 0, 0)

    top, bottom = int(rows[0]), int(rows[-1]) + 1
    left, right = int(cols[0]), int(cols[-1]) + 1
    return pixels[top:bottom, left:right].copy(), (left, top, right, bottom)


# ==============================================================================
# Output buffer
# ==============================================================================

class RawImageBuffer:
    """Interleaved RGBA/RGBA16 pixels, row-major, tightly packed.

    ``left``/``top`` are already shifted by the layer's x/y placement.
    """

    def __init__(self, data, width, height, pixel_size, bytes_per_channel, left=0, top=0, color_mode=None):
        self.data = data
        self.width = width
        self.height = height
        self.pixel_size = pixel_size
        self.bytes_per_channel = bytes_per_channel
        self.left = left
        self.top = top
        self.color_mode = color_mode

    @classmethod
    def from_array(cls, pixels, bytes_per_channel, left=0, top=0, color_mode=None):
        h, w, ps = pixels.shape
        return cls(pixels.tobytes(), w, h, ps, bytes_per_channel, left, top, color_mode)

    @property
    def right(self): return self.left + self.width

    @property
    def bottom(self): return self.top + self.height

    @property
    def bounds(self):
        return (self.left, self.top, self.right, self.bottom)

    def is_empty(self):
        return self.width == 0 or self.height == 0

    def numpy(self):
        """(height, width, 4) array; uint8 for RGBA, little-endian uint16 for RGBA16."""
        arr = np.frombuffer(self.data, dtype=np.uint8).reshape((self.height, self.width, self.pixel_size))
        if self.bytes_per_channel == 2:
            return arr.view('<u2')
        return arr

    def topil(self):
        if self.is_empty():
            return Image.new('RGBA', (self.width, self.height))
        arr = self.numpy()
        if self.bytes_per_channel == 2:
            arr = (arr >> 8).astype(np.uint8)
        return Image.fromarray(np.ascontiguousarray(arr[:, :, :4]))

    def save(self, path):
        self.topil().save(path)
        logger.info(f"[Info] Saved {self.width}x{self.height} image to {path}")

    def __repr__(self):
        return f"RawImageBuffer({self.width}x{self.height}, bounds={self.bounds}, pixel_size={self.pixel_size})"
