"""
Krita layers and masks.

Every variant is built from the attribute mapping of its ``<layer>`` or
``<mask>`` element in maindoc.xml. Only PaintLayer owns tiles and can be
extracted to pixels.
"""

import logging
from dataclasses import replace
from enum import Enum

from kra_errors import ExtractError, MalformedLayerError, UnsupportedColorModeError
from kra_planes import RawImageBuffer, compose_tiles, crop_to_content
from kra_tiles import Bounds

logger = logging.getLogger(__name__)

DEFAULT_OPACITY = 255


class ColorMode(str, Enum):
    RGBA = "RGBA"
    RGBA16 = "RGBA16"

    @property
    def bytes_per_channel(self):
        return 2 if self is ColorMode.RGBA16 else 1

    @property
    def pixel_size(self):
        return 4 * self.bytes_per_channel

    @classmethod
    def parse(cls, name):
        try:
            return cls(name)
        except ValueError:
            raise UnsupportedColorModeError(f"unsupported color space {name!r} (expected RGBA or RGBA16)") from None


class BlendingMode(str, Enum):
    """Krita compositeop keys."""
    PassThrough = "pass through"
    Normal = "normal"
    Dissolve = "dissolve"
    Darken = "darken"
    Multiply = "multiply"
    ColorBurn = "burn"
    LinearBurn = "linear_burn"
    DarkerColor = "darker color"
    Lighten = "lighten"
    Screen = "screen"
    ColorDodge = "dodge"
    LinearDodge = "linear_dodge"
    LighterColor = "lighter color"
    Overlay = "overlay"
    SoftLight = "soft_light"
    HardLight = "hard_light"
    VividLight = "vivid_light"
    LinearLight = "linear light"
    PinLight = "pin_light"
    HardMix = "hard mix"
    Difference = "diff"
    Exclusion = "exclusion"
    Subtract = "subtract"
    Divide = "divide"
    Hue = "hue"
    Saturation = "saturation"
    Color = "color"
    Luminosity = "luminize"

    @classmethod
    def parse(cls, key):
        try:
            return cls(key)
        except ValueError:
            logger.warning(f"[Warn] Unknown compositeop {key!r}, using normal")
            return cls.Normal


def get_attr(attrs, name, default):
    """Read attribute ``name`` cast to the type of ``default``.

    Booleans are stored as integers ("0"/"1").
    """
    raw = attrs.get(name)
    if raw is None:
        return default
    try:
        if isinstance(default, bool):
            return bool(int(raw))
        if isinstance(default, int):
            return int(raw)
    except ValueError:
        raise MalformedLayerError(f"attribute {name}={raw!r} is not an integer") from None
    return raw


# ==============================================================================
# Base classes
# ==============================================================================

class Layer:
    """Encompasses all layers, including masks."""

    kind = 'layer'

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        self.name = get_attr(attrs, 'name', '')
        self.uuid = get_attr(attrs, 'uuid', '')
        self.visible = get_attr(attrs, 'visible', True)
        self.x = get_attr(attrs, 'x', 0)
        self.y = get_attr(attrs, 'y', 0)
        self.bounds = Bounds()
        self.masks = []

    @property
    def width(self): return self.bounds.width

    @property
    def height(self): return self.bounds.height

    def size(self):
        return (self.width, self.height)

    def center(self):
        return (self.bounds.left + self.width // 2, self.bounds.top + self.height // 2)

    def is_layer_useful(self):
        return self.width != 0 and self.height != 0

    def extract_image(self, crop=True):
        raise ExtractError(f"{self.kind} layer {self.name!r} has no raster tiles")

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, uuid={self.uuid!r})"


class BaseLayer(Layer):
    """Layers (not masks): opacity, collapsed flag, color label."""

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.collapsed = get_attr(attrs, 'collapsed', False)
        self.opacity = get_attr(attrs, 'opacity', DEFAULT_OPACITY)
        self.color_label = get_attr(attrs, 'colorlabel', 0)


class CompositeLayer(BaseLayer):
    """Layers carrying a blending mode."""

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.blend_mode_key = BlendingMode.parse(get_attr(attrs, 'compositeop', 'normal'))


# ==============================================================================
# Raster
# ==============================================================================

class PaintLayer(CompositeLayer):
    kind = 'paint'

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.filename = get_attr(attrs, 'filename', '')
        self.color_mode = ColorMode.parse(get_attr(attrs, 'colorspacename', 'RGBA'))
        self.tiles = []
        self.version = 0
        self.tile_width = 0
        self.tile_height = 0
        self.pixel_size = 0
        self.data = None

    def load_tiles(self, stream):
        """Attach a parsed TileStream; bounds become the tile union."""
        self.version = stream.version
        self.tile_width = stream.tile_width
        self.tile_height = stream.tile_height
        self.pixel_size = stream.pixel_size
        self.tiles = list(stream.tiles)
        self.bounds = replace(stream.bounds)

    def extract_image(self, crop=True):
        """Decode all tiles into an RGBA buffer, optionally cropped to painted pixels."""
        if not self.tiles:
            raise ExtractError(f"paint layer {self.name!r} has no tiles")
        bpc = self.color_mode.bytes_per_channel
        if self.pixel_size != self.color_mode.pixel_size:
            raise ExtractError(
                f"paint layer {self.name!r}: pixel size {self.pixel_size} does not match {self.color_mode.value}"
            )

        pixels = compose_tiles(self.tiles, self.bounds, self.pixel_size, self.tile_width, self.tile_height, bpc)
        left, top = self.bounds.left, self.bounds.top

        if crop:
            pixels, (c_left, c_top, _, _) = crop_to_content(pixels, bpc)
            left += c_left
            top += c_top

        image = RawImageBuffer.from_array(pixels, bpc, left + self.x, top + self.y, self.color_mode)
        self.data = image.data
        logger.debug(f"[Info] Extracted {self.name!r}: {image}")
        return image


class GroupLayer(CompositeLayer):
    """Layer that stores children layers."""

    kind = 'group'

    def __init__(self, attrs=None, children=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.passthrough = get_attr(attrs, 'passthrough', False)
        self.children = [] if children is None else list(children)

    def is_layer_useful(self):
        return True


# ==============================================================================
# Clones
# ==============================================================================

class CloneLayerPlaceholder(CompositeLayer):
    """Clone whose target is still a uuid. Replaced by CloneLayer once the tree is built."""

    kind = 'clone'

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.clone_from_uuid = get_attr(attrs, 'clonefromuuid', '')
        self.clone_from_name = get_attr(attrs, 'clonefrom', '')


class CloneLayer(CompositeLayer):
    """Layer that clones another. It directly links to the target layer."""

    kind = 'clone'

    def __init__(self, attrs=None, clone_from=None):
        super().__init__(attrs)
        self.clone_from = clone_from

    @classmethod
    def from_placeholder(cls, placeholder, target):
        layer = cls(clone_from=target)
        for field in ('name', 'uuid', 'visible', 'x', 'y', 'masks',
                      'collapsed', 'opacity', 'color_label', 'blend_mode_key'):
            setattr(layer, field, getattr(placeholder, field))
        layer.bounds = replace(placeholder.bounds)
        return layer

    def is_layer_useful(self):
        return self.clone_from.is_layer_useful()


# ==============================================================================
# Other layers
# ==============================================================================

class VectorLayer(CompositeLayer):
    kind = 'vector'


class FillLayer(CompositeLayer):
    kind = 'fill'


class FilterLayer(CompositeLayer):
    kind = 'filter'


class FileLayer(CompositeLayer):
    """Layer referencing an external image file."""

    kind = 'file'

    def __init__(self, attrs=None):
        attrs = {} if attrs is None else attrs
        super().__init__(attrs)
        self.source = get_attr(attrs, 'source', '')
        self.colorspace = get_attr(attrs, 'colorspacename', 'RGBA')

    @property
    def color_mode(self):
        try:
            return ColorMode(self.colorspace)
        except ValueError:
            return None


# ==============================================================================
# Masks
# ==============================================================================

class Mask(Layer):
    kind = 'mask'


class TransformMask(Mask):
    kind = 'transformmask'


class FilterMask(Mask):
    kind = 'filtermask'


class TransparencyMask(Mask):
    kind = 'transparencymask'


class ColorizeMask(Mask):
    kind = 'colorizemask'


class SelectionMask(Mask):
    kind = 'selectionmask'

    def is_layer_useful(self):
        return False
