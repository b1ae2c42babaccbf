"""
rose_converter
==============

Pure Python tooling for ROSE 3D assets:

  - codec.py        ZMS/ZMD/ZMO/ZOL binary encode + decode
  - gltf_bridge.py  Scene <-> glTF 2.0 (GLB or .gltf + .bin)
  - lightmap.py     static lightmap baking into a packed atlas
  - cli.py          batch command line front end
"""

__version__ = "0.1.0"
