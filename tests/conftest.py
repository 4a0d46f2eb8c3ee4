"""
Shared fixtures for the KRA decoder tests.

Documents are assembled in memory with zipfile; see helpers.py.
"""
import sys
import os
import pytest

# Ensure the repository root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import numpy as np

from helpers import layer_stream, make_kra, planar_from_rgba, tile_payload


@pytest.fixture
def painted_tile():
    """64x64 RGBA tile: red square at rows 10..19, cols 5..24, rest transparent."""
    rgba = np.zeros((64, 64, 4), dtype=np.uint8)
    rgba[10:20, 5:25] = (255, 0, 0, 255)
    return rgba


@pytest.fixture
def simple_kra(painted_tile):
    """One paint layer holding painted_tile at (0, 0)."""
    stream = layer_stream([(0, 0, tile_payload(planar_from_rgba(painted_tile)))])
    layers_xml = (
        '<layer nodetype="paintlayer" name="Paint" uuid="{p1}" filename="layer1" '
        'visible="1" opacity="255" x="0" y="0" compositeop="normal" colorspacename="RGBA"/>'
    )
    return make_kra(layers_xml, {'layer1': stream})
