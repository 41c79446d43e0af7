"""Mesh data containers and their binary file formats."""

from __future__ import annotations

import copy
import enum
import struct
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Sequence

import numpy as np

from scenekit.scene import read_string_list, write_string_list

MAX_LODS = 7
MESH_FILE_MAGIC = 0x12345678
MAX_VERTEX_ATTRIBUTES = 16
MAX_VERTEX_BINDINGS = 16

_HEADER = struct.Struct("<4I")
_MESH = struct.Struct(f"<4I{MAX_LODS + 1}II")
_MATERIAL = struct.Struct("<12f4iI")
_BOX = struct.Struct("<6f")
_ATTRIBUTE = struct.Struct("<4I")
_BINDINGS = struct.Struct(f"<{MAX_VERTEX_BINDINGS}I")
_U32 = struct.Struct("<I")
_U64_PAIR = struct.Struct("<QQ")

MATERIAL_SIZE = _MATERIAL.size

_FLOAT_MAX = float(np.finfo(np.float32).max)


class VertexFormat(enum.IntEnum):
    """Format of one vertex attribute."""

    INVALID = 0
    FLOAT1 = 1
    FLOAT2 = 2
    FLOAT3 = 3
    FLOAT4 = 4
    BYTE1 = 5
    BYTE2 = 6
    BYTE3 = 7
    BYTE4 = 8
    HALF1 = 9
    HALF2 = 10
    HALF3 = 11
    HALF4 = 12
    INT1 = 13
    INT2 = 14
    INT3 = 15
    INT4 = 16
    UINT1 = 17
    UINT2 = 18
    UINT3 = 19
    UINT4 = 20
    INT_2_10_10_10_REV = 21

    @property
    def size(self) -> int:
        """Size of one attribute of this format in bytes."""
        return _FORMAT_SIZES[self]


_FORMAT_SIZES = {
    VertexFormat.INVALID: 0,
    VertexFormat.FLOAT1: 4,
    VertexFormat.FLOAT2: 8,
    VertexFormat.FLOAT3: 12,
    VertexFormat.FLOAT4: 16,
    VertexFormat.BYTE1: 1,
    VertexFormat.BYTE2: 2,
    VertexFormat.BYTE3: 3,
    VertexFormat.BYTE4: 4,
    VertexFormat.HALF1: 2,
    VertexFormat.HALF2: 4,
    VertexFormat.HALF3: 6,
    VertexFormat.HALF4: 8,
    VertexFormat.INT1: 4,
    VertexFormat.INT2: 8,
    VertexFormat.INT3: 12,
    VertexFormat.INT4: 16,
    VertexFormat.UINT1: 4,
    VertexFormat.UINT2: 8,
    VertexFormat.UINT3: 12,
    VertexFormat.UINT4: 16,
    VertexFormat.INT_2_10_10_10_REV: 4,
}


@dataclass
class VertexAttribute:
    """One vertex attribute: shader location, buffer binding, format and byte offset."""

    location: int = 0
    binding: int = 0
    format: VertexFormat = VertexFormat.INVALID
    offset: int = 0


@dataclass
class VertexStreams:
    """Vertex layout: attributes and per-binding strides."""

    attributes: list[VertexAttribute] = field(default_factory=list)
    bindings: list[int] = field(default_factory=list)

    def vertex_size(self) -> int:
        """Total size of all attributes of one vertex in bytes."""
        return sum(attr.format.size for attr in self.attributes)


def _default_lod_offsets() -> list[int]:
    return [0] * (MAX_LODS + 1)


@dataclass
class Mesh:
    """Descriptor of one mesh inside the shared index and vertex blocks."""

    lod_count: int = 1
    index_offset: int = 0
    vertex_offset: int = 0
    vertex_count: int = 0
    lod_offset: list[int] = field(default_factory=_default_lod_offsets)
    material_id: int = 0

    def lod_indices_count(self, lod: int) -> int:
        """Number of indices of level of detail ``lod`` (0 beyond ``lod_count``)."""
        if lod < self.lod_count:
            return self.lod_offset[lod + 1] - self.lod_offset[lod]
        return 0


@dataclass
class MeshFileHeader:
    """Header of a mesh file."""

    magic_value: int = MESH_FILE_MAGIC
    mesh_count: int = 0
    index_data_size: int = 0
    vertex_data_size: int = 0


class MaterialFlags(enum.IntFlag):
    """Bit flags of a material."""

    CAST_SHADOW = 0x1
    RECEIVE_SHADOW = 0x2
    TRANSPARENT = 0x4


@dataclass
class Material:
    """Material parameters; texture fields index into ``MeshData.texture_files``."""

    emissive_factor: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    base_color_factor: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    roughness: float = 1.0
    transparency_factor: float = 1.0
    alpha_test: float = 0.0
    metallic_factor: float = 0.0
    base_color_texture: int = -1
    emissive_texture: int = -1
    normal_texture: int = -1
    opacity_texture: int = -1
    flags: int = MaterialFlags.CAST_SHADOW | MaterialFlags.RECEIVE_SHADOW


@dataclass
class BoundingBox:
    """Axis-aligned box given by its two corners."""

    min: tuple[float, float, float] = (0.0, 0.0, 0.0)
    max: tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class MeshData:
    """Vertex and index data of a set of meshes with their materials."""

    streams: VertexStreams = field(default_factory=VertexStreams)
    index_data: list[int] = field(default_factory=list)
    vertex_data: bytearray = field(default_factory=bytearray)
    meshes: list[Mesh] = field(default_factory=list)
    boxes: list[BoundingBox] = field(default_factory=list)
    materials: list[Material] = field(default_factory=list)
    texture_files: list[str] = field(default_factory=list)

    def file_header(self) -> MeshFileHeader:
        """Header describing this data as it would be saved."""
        return MeshFileHeader(
            mesh_count=len(self.meshes),
            index_data_size=len(self.index_data) * 4,
            vertex_data_size=len(self.vertex_data),
        )


# --- binary packing ------------------------------------------------------------


def _read_exact(stream: BinaryIO, size: int, message: str) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ValueError(message)
    return data


def _copy_mesh(mesh: Mesh) -> Mesh:
    return replace(mesh, lod_offset=list(mesh.lod_offset))


def _pack_header(header: MeshFileHeader) -> bytes:
    return _HEADER.pack(header.magic_value, header.mesh_count, header.index_data_size, header.vertex_data_size)


def _unpack_header(data: bytes) -> MeshFileHeader:
    return MeshFileHeader(*_HEADER.unpack(data))


def _pack_streams(streams: VertexStreams) -> bytes:
    if len(streams.attributes) > MAX_VERTEX_ATTRIBUTES or len(streams.bindings) > MAX_VERTEX_BINDINGS:
        raise ValueError("too many vertex attributes or bindings")
    rows = [
        _ATTRIBUTE.pack(a.location, a.binding, int(a.format), a.offset) for a in streams.attributes
    ]
    rows.extend(_ATTRIBUTE.pack(0, 0, 0, 0) for _ in range(MAX_VERTEX_ATTRIBUTES - len(streams.attributes)))
    strides = list(streams.bindings) + [0] * (MAX_VERTEX_BINDINGS - len(streams.bindings))
    return b"".join(rows) + _BINDINGS.pack(*strides)


_STREAMS_SIZE = _ATTRIBUTE.size * MAX_VERTEX_ATTRIBUTES + _BINDINGS.size


def _unpack_streams(data: bytes) -> VertexStreams:
    attributes = []
    for location, binding, fmt, offset in _ATTRIBUTE.iter_unpack(data[: _ATTRIBUTE.size * MAX_VERTEX_ATTRIBUTES]):
        if fmt == VertexFormat.INVALID:
            break
        attributes.append(VertexAttribute(location, binding, VertexFormat(fmt), offset))
    bindings = []
    for stride in _BINDINGS.unpack(data[_ATTRIBUTE.size * MAX_VERTEX_ATTRIBUTES :]):
        if stride == 0:
            break
        bindings.append(stride)
    return VertexStreams(attributes=attributes, bindings=bindings)


def _pack_mesh(mesh: Mesh) -> bytes:
    if len(mesh.lod_offset) != MAX_LODS + 1:
        raise ValueError(f"a mesh needs exactly {MAX_LODS + 1} LOD offsets")
    return _MESH.pack(
        mesh.lod_count, mesh.index_offset, mesh.vertex_offset, mesh.vertex_count, *mesh.lod_offset, mesh.material_id
    )


def _unpack_mesh(values: tuple[int, ...]) -> Mesh:
    return Mesh(
        lod_count=values[0],
        index_offset=values[1],
        vertex_offset=values[2],
        vertex_count=values[3],
        lod_offset=list(values[4 : 5 + MAX_LODS]),
        material_id=values[5 + MAX_LODS],
    )


def _pack_box(box: BoundingBox) -> bytes:
    return _BOX.pack(*box.min, *box.max)


def _unpack_box(values: tuple[float, ...]) -> BoundingBox:
    return BoundingBox(tuple(values[:3]), tuple(values[3:]))


def _pack_material(m: Material) -> bytes:
    return _MATERIAL.pack(
        *m.emissive_factor,
        *m.base_color_factor,
        m.roughness,
        m.transparency_factor,
        m.alpha_test,
        m.metallic_factor,
        m.base_color_texture,
        m.emissive_texture,
        m.normal_texture,
        m.opacity_texture,
        int(m.flags),
    )


def _unpack_material(values: tuple) -> Material:
    return Material(
        emissive_factor=tuple(values[0:4]),
        base_color_factor=tuple(values[4:8]),
        roughness=values[8],
        transparency_factor=values[9],
        alpha_test=values[10],
        metallic_factor=values[11],
        base_color_texture=values[12],
        emissive_texture=values[13],
        normal_texture=values[14],
        opacity_texture=values[15],
        flags=values[16],
    )


# --- validation ----------------------------------------------------------------


def is_mesh_data_valid(path: str | Path) -> bool:
    """True if the file can be opened and holds a complete mesh file header."""
    try:
        with open(path, "rb") as f:
            return len(f.read(_HEADER.size)) == _HEADER.size
    except OSError:
        return False


def is_mesh_hierarchy_valid(path: str | Path) -> bool:
    """True if the scene file can be opened."""
    try:
        with open(path, "rb"):
            return True
    except OSError:
        return False


def is_mesh_materials_valid(path: str | Path) -> bool:
    """True if the material file's count and byte size agree."""
    try:
        with open(path, "rb") as f:
            data = f.read(_U64_PAIR.size)
    except OSError:
        return False
    if len(data) != _U64_PAIR.size:
        return False
    num_materials, materials_size = _U64_PAIR.unpack(data)
    return num_materials * MATERIAL_SIZE == materials_size


# --- loading and saving --------------------------------------------------------


def load_mesh_data(path: str | Path) -> MeshData:
    """Load meshes, bounding boxes, indices and vertices from a mesh file."""
    out = MeshData()
    with open(path, "rb") as f:
        header = _unpack_header(_read_exact(f, _HEADER.size, "Unable to read mesh file header."))
        out.streams = _unpack_streams(_read_exact(f, _STREAMS_SIZE, "Unable to read vertex streams description."))
        mesh_bytes = _read_exact(f, _MESH.size * header.mesh_count, "Could not read mesh descriptors.")
        out.meshes = [_unpack_mesh(v) for v in _MESH.iter_unpack(mesh_bytes)]
        box_bytes = _read_exact(f, _BOX.size * header.mesh_count, "Could not read bounding boxes.")
        out.boxes = [_unpack_box(v) for v in _BOX.iter_unpack(box_bytes)]
        if header.index_data_size % 4:
            raise ValueError("Unable to read index data.")
        index_bytes = _read_exact(f, header.index_data_size, "Unable to read index data.")
        out.index_data = np.frombuffer(index_bytes, dtype="<u4").tolist()
        out.vertex_data = bytearray(_read_exact(f, header.vertex_data_size, "Unable to read vertex data."))
    return out


def load_mesh_data_materials(path: str | Path, mesh_data: MeshData) -> None:
    """Read materials and texture file names into ``mesh_data``."""
    with open(path, "rb") as f:
        num_materials, materials_size = _U64_PAIR.unpack(
            _read_exact(f, _U64_PAIR.size, "Unable to read material counts.")
        )
        if num_materials * MATERIAL_SIZE != materials_size:
            raise ValueError(f"Corrupted material file '{path}'.")
        data = _read_exact(f, materials_size, "Unable to read material data.")
        mesh_data.materials = [_unpack_material(v) for v in _MATERIAL.iter_unpack(data)]
        mesh_data.texture_files = read_string_list(f)


def save_mesh_data(path: str | Path, mesh_data: MeshData) -> None:
    """Write ``mesh_data`` (without materials) to a mesh file."""
    header = mesh_data.file_header()
    with open(path, "wb") as f:
        f.write(_pack_header(header))
        f.write(_pack_streams(mesh_data.streams))
        f.write(b"".join(_pack_mesh(m) for m in mesh_data.meshes))
        f.write(b"".join(_pack_box(b) for b in mesh_data.boxes[: header.mesh_count]))
        f.write(np.asarray(mesh_data.index_data, dtype="<u4").tobytes())
        f.write(bytes(mesh_data.vertex_data))


def save_mesh_data_materials(path: str | Path, mesh_data: MeshData) -> None:
    """Write the materials and texture file names of ``mesh_data``."""
    with open(path, "wb") as f:
        f.write(_U64_PAIR.pack(len(mesh_data.materials), len(mesh_data.materials) * MATERIAL_SIZE))
        f.write(b"".join(_pack_material(m) for m in mesh_data.materials))
        write_string_list(f, mesh_data.texture_files)


def save_bounding_boxes(path: str | Path, boxes: Sequence[BoundingBox]) -> None:
    """Write a count followed by the boxes."""
    with open(path, "wb") as f:
        f.write(_U32.pack(len(boxes)))
        f.write(b"".join(_pack_box(b) for b in boxes))


def load_bounding_boxes(path: str | Path) -> list[BoundingBox]:
    """Read boxes written by :func:`save_bounding_boxes`."""
    with open(path, "rb") as f:
        (count,) = _U32.unpack(_read_exact(f, _U32.size, "Unable to read bounding box count."))
        data = _read_exact(f, _BOX.size * count, "Unable to read bounding boxes.")
    return [_unpack_box(v) for v in _BOX.iter_unpack(data)]


# --- processing ----------------------------------------------------------------


def merge_mesh_data(target: MeshData, sources: Sequence[MeshData]) -> MeshFileHeader:
    """Append all ``sources`` to ``target``, shifting indices, offsets and material ids."""
    total_vertices = 0
    total_indices = 0

    if sources:
        target.streams = copy.deepcopy(sources[0].streams)

    vertex_size = target.streams.vertex_size()
    offset = 0
    mtl_offset = 0

    for src in sources:
        if src.streams != target.streams:
            raise ValueError("all merged meshes must share the same vertex streams")
        target.index_data.extend(src.index_data)
        target.vertex_data.extend(src.vertex_data)
        target.meshes.extend(_copy_mesh(m) for m in src.meshes)
        target.boxes.extend(replace(b) for b in src.boxes)

        for mesh in target.meshes[offset : offset + len(src.meshes)]:
            mesh.index_offset += total_indices
            mesh.material_id += mtl_offset

        end = total_indices + len(src.index_data)
        target.index_data[total_indices:end] = [i + total_vertices for i in target.index_data[total_indices:end]]

        offset += len(src.meshes)
        mtl_offset += len(src.materials)
        total_indices += len(src.index_data)
        total_vertices += len(src.vertex_data) // vertex_size

    return MeshFileHeader(
        magic_value=MESH_FILE_MAGIC,
        mesh_count=offset,
        index_data_size=total_indices * 4,
        vertex_data_size=len(target.vertex_data),
    )


def recalculate_bounding_boxes(mesh_data: MeshData) -> None:
    """Rebuild one box per mesh from the positions its LOD 0 indices reference."""
    attributes = mesh_data.streams.attributes
    if not attributes or attributes[0].format != VertexFormat.FLOAT3:
        raise ValueError("the first vertex attribute must be a FLOAT3 position")

    stride = mesh_data.streams.vertex_size()
    boxes = []
    for mesh in mesh_data.meshes:
        lo = [_FLOAT_MAX] * 3
        hi = [-_FLOAT_MAX] * 3
        start = mesh.index_offset
        for index in mesh_data.index_data[start : start + mesh.lod_indices_count(0)]:
            position = struct.unpack_from("<3f", mesh_data.vertex_data, (index + mesh.vertex_offset) * stride)
            lo = [min(a, b) for a, b in zip(lo, position)]
            hi = [max(a, b) for a, b in zip(hi, position)]
        boxes.append(BoundingBox(tuple(lo), tuple(hi)))
    mesh_data.boxes = boxes