"""
LZF tile codec used by Krita layer tile streams.

Each tile payload starts with a one byte flag. Krita writes ``1`` for LZF
compressed data and ``0`` for the raw planar tile; any non-zero flag is
decoded as LZF.
"""

from kra_errors import (
    InvalidReferenceError,
    TileOverflowError,
    TruncatedTileError,
)

COMPRESSED_DATA_FLAG = 1
RAW_DATA_FLAG = 0

# Control bytes below this value (after +1) are literal runs
LITERAL_LIMIT = 33
# A saturated 3-bit length field pulls an extra length byte
LONG_MATCH = 6


def decompress(compressed, expected_length):
    """[Algorithm] LZF decoder with overlapping back-references.

    Returns the decoded bytes, which may be shorter than ``expected_length``
    for a short tile. Never writes past ``expected_length``.
    """
    output = bytearray(expected_length)
    ip = 0
    op = 0
    in_len = len(compressed)

    # A lone trailing control byte carries nothing and is not decoded
    while ip < in_len - 1:
        c = compressed[ip]
        ip += 1
        ctrl = c + 1

        if ctrl < LITERAL_LIMIT:
            # Literal run
            if ip + ctrl > in_len:
                raise TruncatedTileError(
                    f"literal run of {ctrl} bytes at input offset {ip - 1} exceeds input ({in_len} bytes)"
                )
            if op + ctrl > expected_length:
                raise TileOverflowError(
                    f"literal run at output offset {op} exceeds {expected_length} bytes"
                )
            output[op:op + ctrl] = compressed[ip:ip + ctrl]
            ip += ctrl
            op += ctrl
            continue

        # Back-reference
        ofs = (c & 31) << 8
        length = (c >> 5) - 1
        ref = op - ofs - 1

        if length == LONG_MATCH:
            length += compressed[ip]
            ip += 1

        if ip >= in_len:
            raise InvalidReferenceError(f"back-reference at input offset {ip - 2} is missing its offset byte")
        ref -= compressed[ip]
        ip += 1

        if ref < 0:
            raise InvalidReferenceError(f"back-reference points {-ref} bytes before output start (output offset {op})")
        count = length + 3
        if op + count > expected_length:
            raise TileOverflowError(
                f"back-reference of {count} bytes at output offset {op} exceeds {expected_length} bytes"
            )

        if ref + count <= op:
            output[op:op + count] = output[ref:ref + count]
            op += count
        else:
            # Overlapping copy repeats bytes written by this same run
            for _ in range(count):
                output[op] = output[ref]
                op += 1
                ref += 1

    return bytes(output[:op])


def expand_tile(payload, expected_length):
    """[Helper] Decode one framed tile payload (flag byte + data).

    A ``0`` flag means the body is raw. Any other value is LZF.
    """
    if not payload:
        return b''
    flag = payload[0]
    body = payload[1:]
    if flag == RAW_DATA_FLAG:
        if len(body) > expected_length:
            raise TileOverflowError(f"raw tile of {len(body)} bytes exceeds {expected_length} bytes")
        return bytes(body)
    return decompress(body, expected_length)
