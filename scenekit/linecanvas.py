"""Immediate-mode line canvases that collect 2D and 3D debug lines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from scenekit.vtxdata import BoundingBox

_FRUSTUM_GRID_LINES = 100
_FRUSTUM_GRID_DIM = 0.7

_NDC_CORNERS = (
    (-1.0, -1.0, -1.0),
    (+1.0, -1.0, -1.0),
    (+1.0, +1.0, -1.0),
    (-1.0, +1.0, -1.0),
    (-1.0, -1.0, +1.0),
    (+1.0, -1.0, +1.0),
    (+1.0, +1.0, +1.0),
    (-1.0, +1.0, +1.0),
)

# pairs of corner indices: side edges, near quad with diagonals, far quad with diagonals
_FRUSTUM_EDGES = (
    (0, 4), (1, 5), (2, 6), (3, 7),
    (0, 1), (1, 2), (2, 3), (3, 0),
    (0, 2), (1, 3),
    (4, 5), (5, 6), (6, 7), (7, 4),
    (4, 6), (5, 7),
)

# (start a, start b, end a, end b) for the bottom, top, left and right grids
_FRUSTUM_GRIDS = (
    (0, 1, 4, 5),
    (2, 3, 6, 7),
    (0, 3, 4, 7),
    (1, 2, 5, 6),
)

_BOX_EDGES = (
    (0, 1), (2, 3), (4, 5), (6, 7),
    (0, 2), (1, 3), (4, 6), (5, 7),
    (0, 4), (1, 5), (2, 6), (3, 7),
)


def _vec(values: Sequence[float], size: int) -> np.ndarray:
    array = np.asarray(values, dtype=np.float64).reshape(-1)
    if array.shape != (size,):
        raise ValueError(f"expected a vector of {size} components, got {array.shape[0]}")
    return array


def _mat4(values) -> np.ndarray:
    array = np.asarray(values, dtype=np.float64)
    if array.shape != (4, 4):
        raise ValueError("expected a 4x4 matrix")
    return array


@dataclass
class Line2D:
    """One screen-space line segment with its RGBA colour."""

    p1: np.ndarray
    p2: np.ndarray
    color: np.ndarray


class LineCanvas2D:
    """Collects screen-space lines for an overlay."""

    def __init__(self) -> None:
        self.lines: list[Line2D] = []

    def clear(self) -> None:
        """Drop all collected lines."""
        self.lines.clear()

    def line(self, p1: Sequence[float], p2: Sequence[float], color: Sequence[float]) -> None:
        """Add a segment from ``p1`` to ``p2``."""
        self.lines.append(Line2D(_vec(p1, 2), _vec(p2, 2), _vec(color, 4)))


@dataclass
class LineVertex:
    """One vertex of a 3D line: homogeneous position and RGBA colour."""

    pos: np.ndarray
    color: np.ndarray


@dataclass
class LineCanvas3D:
    """Collects world-space lines, two vertices per line."""

    mvp: np.ndarray = field(default_factory=lambda: np.eye(4, dtype=np.float64))
    vertices: list[LineVertex] = field(default_factory=list)

    def clear(self) -> None:
        """Drop all collected lines."""
        self.vertices.clear()

    def line(self, p1: Sequence[float], p2: Sequence[float], color: Sequence[float]) -> None:
        """Add a segment from ``p1`` to ``p2``."""
        c = _vec(color, 4)
        self.vertices.append(LineVertex(np.append(_vec(p1, 3), 1.0), c.copy()))
        self.vertices.append(LineVertex(np.append(_vec(p2, 3), 1.0), c.copy()))

    def plane(
        self,
        orig: Sequence[float],
        v1: Sequence[float],
        v2: Sequence[float],
        n1: int,
        n2: int,
        s1: float,
        s2: float,
        color: Sequence[float],
        outline_color: Sequence[float],
    ) -> None:
        """Draw an ``s1`` x ``s2`` rectangle spanned by ``v1``/``v2`` with an ``n1`` x ``n2`` grid."""
        o = _vec(orig, 3)
        a = _vec(v1, 3)
        b = _vec(v2, 3)
        half_a = s1 / 2.0 * a
        half_b = s2 / 2.0 * b

        self.line(o - half_a - half_b, o - half_a + half_b, outline_color)
        self.line(o + half_a - half_b, o + half_a + half_b, outline_color)
        self.line(o - half_a + half_b, o + half_a + half_b, outline_color)
        self.line(o - half_a - half_b, o + half_a - half_b, outline_color)

        for i in range(1, n1):
            t = (i - n1 / 2.0) * s1 / n1
            o1 = o + t * a
            self.line(o1 - half_b, o1 + half_b, color)

        for i in range(1, n2):
            t = (i - n2 / 2.0) * s2 / n2
            o2 = o + t * b
            self.line(o2 - half_a, o2 + half_a, color)

    def box(self, m, size: Sequence[float], color: Sequence[float]) -> None:
        """Draw the 12 edges of a box with half extents ``size`` transformed by ``m``."""
        matrix = _mat4(m)
        x, y, z = _vec(size, 3)
        corners = [
            (sx * x, sy * y, sz * z)
            for sx in (1.0, -1.0)
            for sy in (1.0, -1.0)
            for sz in (1.0, -1.0)
        ]
        points = [(matrix @ np.array([*p, 1.0]))[:3] for p in corners]
        for i, j in _BOX_EDGES:
            self.line(points[i], points[j], color)

    def box_from_bounds(self, m, box: BoundingBox, color: Sequence[float]) -> None:
        """Draw an axis-aligned bounding box transformed by ``m``."""
        lo = _vec(box.min, 3)
        hi = _vec(box.max, 3)
        translate = np.eye(4)
        translate[:3, 3] = 0.5 * (lo + hi)
        self.box(_mat4(m) @ translate, 0.5 * (hi - lo), color)

    def frustum(self, cam_view, cam_proj, color: Sequence[float]) -> None:
        """Draw the frustum of a camera with grids on its four side faces."""
        inverse = np.linalg.inv(_mat4(cam_view)) @ np.linalg.inv(_mat4(cam_proj))
        pp = []
        for corner in _NDC_CORNERS:
            q = inverse @ np.array([*corner, 1.0])
            pp.append(q[:3] / q[3])

        for i, j in _FRUSTUM_EDGES:
            self.line(pp[i], pp[j], color)

        grid_color = _vec(color, 4) * _FRUSTUM_GRID_DIM
        for a, b, end_a, end_b in _FRUSTUM_GRIDS:
            p1 = pp[a].copy()
            p2 = pp[b].copy()
            step1 = (pp[end_a] - pp[a]) / _FRUSTUM_GRID_LINES
            step2 = (pp[end_b] - pp[b]) / _FRUSTUM_GRID_LINES
            for _ in range(_FRUSTUM_GRID_LINES):
                self.line(p1, p2, grid_color)
                p1 = p1 + step1
                p2 = p2 + step2

    def vertex_bytes(self) -> bytes:
        """Vertices packed as little-endian float32 ``pos.xyzw, color.rgba`` records."""
        if not self.vertices:
            return b""
        rows = np.array([np.concatenate((v.pos, v.color)) for v in self.vertices], dtype="<f4")
        return rows.tobytes()