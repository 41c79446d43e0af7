"""Scene graphs, mesh data files, debug lines, indirect draw lists and lazy texture loading for 3D renderers."""

__version__ = "0.1.0"
__all__ = ["scene", "vtxdata", "mergeutil", "linecanvas", "indirect", "lazytextures"]