"""
Krita .kra/.krz document parser.

Reads the ZIP container, validates ``mimetype`` and ``maindoc.xml``, builds
the layer tree and resolves clone layers. Layer pixels are decoded on demand
through ``Layer.extract_image``.

Usage: python kra_parser.py FILE.kra [OUT_DIR] [--no-crop] [-v]
"""

import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
import zipfile

from kra_errors import CloneResolutionError, DocumentError, KraError, MalformedLayerError
from kra_layers import (
    CloneLayer,
    CloneLayerPlaceholder,
    ColorizeMask,
    ColorMode,
    FileLayer,
    FillLayer,
    FilterLayer,
    FilterMask,
    GroupLayer,
    PaintLayer,
    SelectionMask,
    TransformMask,
    TransparencyMask,
    VectorLayer,
)
from kra_tiles import parse_layer_data

logger = logging.getLogger(__name__)

MIMETYPE_ENTRY = 'mimetype'
MIMETYPE = 'application/x-krita'
MAINDOC = 'maindoc.xml'

NODE_TYPES = {
    'paintlayer': PaintLayer,
    'grouplayer': GroupLayer,
    'clonelayer': CloneLayerPlaceholder,
    'vectorlayer': VectorLayer,
    'shapelayer': VectorLayer,
    'filllayer': FillLayer,
    'generatorlayer': FillLayer,
    'filelayer': FileLayer,
    'filterlayer': FilterLayer,
    'adjustmentlayer': FilterLayer,
    'transformmask': TransformMask,
    'filtermask': FilterMask,
    'transparencymask': TransparencyMask,
    'colorizemask': ColorizeMask,
    'selectionmask': SelectionMask,
}


def local_name(tag):
    """Strip the ``{namespace}`` prefix ElementTree puts on tags."""
    return tag.rsplit('}', 1)[-1]


def find_child(element, name):
    for child in element:
        if local_name(child.tag) == name:
            return child
    return None


# ==============================================================================
# Container
# ==============================================================================

class KraArchive:
    """ZIP container access: read_entry / has_entry."""

    def __init__(self, source):
        try:
            self.zip = zipfile.ZipFile(source)
        except (zipfile.BadZipFile, OSError) as e:
            raise DocumentError(f"cannot open {source!r} as a KRA archive: {e}") from e
        self.names = set(self.zip.namelist())

    def has_entry(self, path):
        return path in self.names

    def read_entry(self, path):
        if path not in self.names:
            raise DocumentError(f"archive entry {path!r} not found")
        return self.zip.read(path)

    def close(self):
        self.zip.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


# ==============================================================================
# Layer tree
# ==============================================================================

class LayerTreeBuilder:
    """Builds layer variants from ``<layers>``/``<masks>`` elements.

    Tile streams are read from ``<document name>/layers/<filename>``.
    Clone layers stay placeholders until ``resolve_clones`` runs.
    """

    def __init__(self, archive, document_name):
        self.archive = archive
        self.document_name = document_name

    def layer_path(self, filename):
        return f"{self.document_name}/layers/{filename}"

    def build(self, container):
        layers = []
        if container is None:
            return layers
        for element in container:
            if local_name(element.tag) not in ('layer', 'mask'):
                continue
            try:
                layer = self.build_layer(element)
            except MalformedLayerError as e:
                logger.warning(f"[Skip] Layer {element.get('name')!r} rejected: {e}")
                continue
            if layer is not None:
                layers.append(layer)
        return layers

    def build_layer(self, element):
        node_type = element.get('nodetype', '')
        cls = NODE_TYPES.get(node_type)
        if cls is None:
            logger.debug(f"[Skip] Unknown node type {node_type!r} ({element.get('name')!r})")
            return None

        attrs = element.attrib
        if cls is GroupLayer:
            children = self.build(find_child(element, 'layers'))
            layer = GroupLayer(attrs, children)
        else:
            layer = cls(attrs)

        if isinstance(layer, PaintLayer):
            self.load_paint_layer(layer)

        layer.masks = self.build(find_child(element, 'masks'))
        return layer

    def load_paint_layer(self, layer):
        if not layer.filename:
            raise MalformedLayerError("paint layer has no filename")
        path = self.layer_path(layer.filename)
        if not self.archive.has_entry(path):
            raise MalformedLayerError(f"layer data {path!r} missing from archive")

        stream = parse_layer_data(self.archive.read_entry(path))
        layer.load_tiles(stream)
        if not layer.tiles:
            logger.debug(f"[Info] Paint layer {layer.name!r} has no tiles")


def iter_layers(layers):
    """Depth-first walk: each layer, its masks, then its children."""
    for layer in layers:
        yield layer
        yield from iter_layers(layer.masks)
        if isinstance(layer, GroupLayer):
            yield from iter_layers(layer.children)


def resolve_clones(layers):
    """Replace every CloneLayerPlaceholder in place with a resolved CloneLayer.

    Targets are looked up by uuid over the whole finished tree, so forward
    references work. Missing targets and cycles raise CloneResolutionError.
    """
    index = {}
    for layer in iter_layers(layers):
        if not layer.uuid:
            continue
        if layer.uuid in index:
            logger.warning(f"[Warn] Duplicate uuid {layer.uuid}, keeping first")
            continue
        index[layer.uuid] = layer

    resolved = {}

    def resolve(placeholder, visiting):
        key = id(placeholder)
        if key in resolved:
            return resolved[key]
        if key in visiting:
            raise CloneResolutionError(f"clone cycle through {placeholder.name!r} ({placeholder.uuid})")
        visiting.add(key)

        target = index.get(placeholder.clone_from_uuid)
        if target is None:
            raise CloneResolutionError(
                f"clone {placeholder.name!r} targets missing uuid {placeholder.clone_from_uuid!r}"
            )
        if isinstance(target, CloneLayerPlaceholder):
            target = resolve(target, visiting)

        clone = CloneLayer.from_placeholder(placeholder, target)
        resolved[key] = clone
        return clone

    def walk(nodes):
        for i, node in enumerate(nodes):
            if isinstance(node, CloneLayerPlaceholder):
                node = nodes[i] = resolve(node, set())
            walk(node.masks)
            if isinstance(node, GroupLayer):
                walk(node.children)

    walk(layers)
    return len(resolved)


# ==============================================================================
# Document
# ==============================================================================

class KraDocument:
    def __init__(self, name, width, height, color_mode, layers=None):
        self.name = name
        self.width = width
        self.height = height
        self.color_mode = color_mode
        self.layers = [] if layers is None else layers

    def descendants(self):
        return iter_layers(self.layers)

    def find_layer(self, uuid):
        for layer in self.descendants():
            if layer.uuid == uuid:
                return layer
        return None

    get_layer = find_layer

    def paint_layers(self):
        return [l for l in self.descendants() if isinstance(l, PaintLayer)]

    def extract_images(self, crop=True):
        """uuid -> RawImageBuffer for every useful paint layer."""
        return {
            layer.uuid: layer.extract_image(crop=crop)
            for layer in self.paint_layers()
            if layer.is_layer_useful()
        }

    def __repr__(self):
        return f"KraDocument(name={self.name!r}, {self.width}x{self.height}, {self.color_mode.value})"


def _int_attr(element, name):
    value = element.get(name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DocumentError(f"IMAGE attribute {name}={value!r} is not an integer") from None


def read_document(archive):
    """Parse an opened KraArchive into a KraDocument."""
    if not archive.has_entry(MIMETYPE_ENTRY):
        raise DocumentError("missing 'mimetype' entry, not a Krita document")
    mimetype = archive.read_entry(MIMETYPE_ENTRY).decode('ascii', errors='replace')
    if mimetype != MIMETYPE:
        raise DocumentError(f"mimetype is {mimetype!r}, expected {MIMETYPE!r}")
    if not archive.has_entry(MAINDOC):
        raise DocumentError(f"missing {MAINDOC!r}")

    try:
        root = ET.fromstring(archive.read_entry(MAINDOC))
    except ET.ParseError as e:
        raise DocumentError(f"cannot parse {MAINDOC}: {e}") from e

    image = find_child(root, 'IMAGE')
    if image is None:
        raise DocumentError(f"{MAINDOC} has no IMAGE element")

    name = image.get('name', '')
    width = _int_attr(image, 'width')
    height = _int_attr(image, 'height')
    color_mode = ColorMode.parse(image.get('colorspacename', ''))

    builder = LayerTreeBuilder(archive, name)
    layers = builder.build(find_child(image, 'layers'))
    count = resolve_clones(layers)

    document = KraDocument(name, width, height, color_mode, layers)
    logger.info(f"[Info] Opened {document} with {len(layers)} top-level layers, {count} clones")
    return document


def open_document(source):
    """Open a .kra/.krz path or binary file object."""
    with KraArchive(source) as archive:
        return read_document(archive)


# ==============================================================================
# CLI
# ==============================================================================

def print_tree(layers, depth=0):
    for layer in layers:
        flags = '' if layer.visible else ' (hidden)'
        extra = ''
        if isinstance(layer, CloneLayer):
            extra = f" -> {layer.clone_from.name!r}"
        elif layer.width and layer.height:
            extra = f" {layer.width}x{layer.height} @({layer.bounds.left},{layer.bounds.top})"
        print(f"{'    ' * depth}[{layer.kind}] {layer.name}{extra}{flags}")
        print_tree(layer.masks, depth + 1)
        if isinstance(layer, GroupLayer):
            print_tree(layer.children, depth + 1)


def save_images(document, out_dir, crop=True):
    if not os.path.exists(out_dir): os.makedirs(out_dir)
    saved = 0
    for layer in document.paint_layers():
        if not layer.is_layer_useful():
            continue
        safe_name = re.sub(r'[\\/*?:"<>|]', "_", f"{layer.name}_{layer.uuid}")
        fname = os.path.join(out_dir, f"{safe_name}.png")
        try:
            image = layer.extract_image(crop=crop)
        except KraError as e:
            logger.error(f"[Err] Extracting {layer.name!r}: {e}")
            continue
        if image.is_empty():
            logger.info(f"[Info] {layer.name!r} is fully transparent, skipped")
            continue
        image.save(fname)
        saved += 1
    return saved


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)
    crop = '--no-crop' not in args
    verbose = '-v' in args
    positional = [a for a in args if not a.startswith('-')]

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if not positional:
        print("Usage: python kra_parser.py FILE.kra [OUT_DIR] [--no-crop] [-v]")
        return 1

    filename = positional[0]
    out_dir = positional[1] if len(positional) > 1 else filename + '-output'

    try:
        document = open_document(filename)
    except KraError as e:
        logger.error(f"[Fatal] {e}")
        return 1

    print(document)
    print_tree(document.layers)
    saved = save_images(document, out_dir, crop=crop)
    print(f"Saved {saved} layers to {out_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
