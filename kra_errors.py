"""
Error classes for the KRA decoder.

Document-level problems abort ``open_document``; tile and extraction
problems only fail the call that hit them.
"""


class KraError(Exception):
    """Base error for all KRA decoding operations."""
    pass


# ==============================================================================
# Document level
# ==============================================================================

class DocumentError(KraError):
    """Container or maindoc.xml structural error."""
    pass


class UnsupportedColorModeError(DocumentError):
    """Colour space other than 8/16-bit integer RGBA."""
    pass


class CloneResolutionError(DocumentError):
    """Clone layer points at a missing uuid or forms a cycle."""
    pass


class TileStreamError(DocumentError):
    """Layer tile stream header or record is malformed."""
    pass


# ==============================================================================
# Tile codec
# ==============================================================================

class TileDecodeError(KraError):
    """LZF tile payload could not be decoded."""
    pass


class TileOverflowError(TileDecodeError):
    pass


class InvalidReferenceError(TileDecodeError):
    pass


class TruncatedTileError(TileDecodeError):
    pass


# ==============================================================================
# Extraction
# ==============================================================================

class ExtractError(KraError):
    """Layer pixels could not be extracted."""
    pass


class CorruptTileError(ExtractError):
    def __init__(self, message, left=None, top=None):
        super().__init__(message)
        self.left = left
        self.top = top


class MalformedLayerError(KraError):
    """Single layer element is unusable; the builder skips it."""
    pass
