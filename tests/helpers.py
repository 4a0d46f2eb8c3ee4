"""
Builders for tile streams and .kra archives used by the tests.
"""
import io
import zipfile

import numpy as np

from kra_lzf import COMPRESSED_DATA_FLAG, RAW_DATA_FLAG

KRITA_NS = "http://www.calligra.org/DTD/krita"

MAX_LITERAL = 32
MAX_OFFSET = 8191
MAX_MATCH = 264


def lzf_compress(data):
    """Greedy reference LZF compressor producing streams kra_lzf can decode."""
    data = bytes(data)
    out = bytearray()
    literals = bytearray()
    table = {}
    n = len(data)
    i = 0

    def flush():
        for start in range(0, len(literals), MAX_LITERAL):
            chunk = literals[start:start + MAX_LITERAL]
            out.append(len(chunk) - 1)
            out.extend(chunk)
        literals.clear()

    while i < n:
        ref = None
        if i + 3 <= n:
            key = data[i:i + 3]
            cand = table.get(key)
            table[key] = i
            if cand is not None and i - cand - 1 <= MAX_OFFSET:
                ref = cand
        if ref is None:
            literals.append(data[i])
            i += 1
            continue

        count = 3
        limit = min(MAX_MATCH, n - i)
        while count < limit and data[ref + count] == data[i + count]:
            count += 1

        flush()
        off = i - ref - 1
        if count < 9:
            out.append(((count - 2) << 5) | (off >> 8))
        else:
            out.append((7 << 5) | (off >> 8))
            out.append(count - 9)
        out.append(off & 0xFF)
        i += count

    flush()
    return bytes(out)


def tile_payload(planar, compressed=True):
    """Framed tile payload: flag byte then LZF or raw planar bytes."""
    if compressed:
        return bytes([COMPRESSED_DATA_FLAG]) + lzf_compress(planar)
    return bytes([RAW_DATA_FLAG]) + bytes(planar)


def planar_from_rgba(rgba):
    """(h, w, 4) RGBA array -> planar B,G,R,A bytes as Krita stores them."""
    bgra = rgba[:, :, [2, 1, 0, 3]]
    return np.ascontiguousarray(bgra.reshape(-1, bgra.shape[2]).T).tobytes()


def layer_stream(tiles, tile_width=64, tile_height=64, pixel_size=4, version=2):
    """tiles: list of (left, top, payload)."""
    out = bytearray()
    out += f"VERSION {version}\n".encode()
    out += f"TILEWIDTH {tile_width}\n".encode()
    out += f"TILEHEIGHT {tile_height}\n".encode()
    out += f"PIXELSIZE {pixel_size}\n".encode()
    out += f"DATA {len(tiles)}\n".encode()
    for left, top, payload in tiles:
        out += f"{left},{top},LZF,{len(payload)}\n".encode()
        out += payload
    return bytes(out)


def maindoc(layers_xml, name="Test", width=64, height=64, colorspace="RGBA"):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<DOC xmlns="{KRITA_NS}" syntaxVersion="2.0" editor="Krita">'
        f'<IMAGE name="{name}" width="{width}" height="{height}" colorspacename="{colorspace}" '
        'mime="application/x-kra">'
        f'<layers>{layers_xml}</layers>'
        '</IMAGE></DOC>'
    )


def make_kra(layers_xml, files=None, name="Test", width=64, height=64, colorspace="RGBA",
             mimetype="application/x-krita", maindoc_xml=None, skip=()):
    """In-memory .kra archive. ``files`` maps layer filename -> stream bytes."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        if 'mimetype' not in skip:
            zf.writestr('mimetype', mimetype)
        if 'maindoc.xml' not in skip:
            xml = maindoc_xml if maindoc_xml is not None else maindoc(layers_xml, name, width, height, colorspace)
            zf.writestr('maindoc.xml', xml)
        for filename, data in (files or {}).items():
            zf.writestr(f"{name}/layers/{filename}", data)
    buf.seek(0)
    return buf
