"""Lazy texture loading: KTX images are read in advance and turned into textures one at a time."""

from __future__ import annotations

import enum
import logging
import struct
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from scenekit.vtxdata import Material

logger = logging.getLogger(__name__)

KTX1_IDENTIFIER = b"\xabKTX 11\xbb\r\n\x1a\n"
KTX1_ENDIANNESS = 0x04030201

GL_COMPRESSED_RGBA_BPTC_UNORM = 0x8E8C
GL_RGBA8 = 0x8058
GL_RG16F = 0x822F
GL_RGBA16F = 0x881A
GL_RGBA32F = 0x8814

_HEADER_FIELDS = 13


class TextureFormat(enum.Enum):
    """Pixel formats a loaded texture can have."""

    INVALID = "invalid"
    BC7_RGBA = "bc7_rgba"
    RGBA_UN8 = "rgba_un8"
    RG_F16 = "rg_f16"
    RGBA_F16 = "rgba_f16"
    RGBA_F32 = "rgba_f32"


_GL_FORMATS = {
    GL_COMPRESSED_RGBA_BPTC_UNORM: TextureFormat.BC7_RGBA,
    GL_RGBA8: TextureFormat.RGBA_UN8,
    GL_RG16F: TextureFormat.RG_F16,
    GL_RGBA16F: TextureFormat.RGBA_F16,
    GL_RGBA32F: TextureFormat.RGBA_F32,
}


@dataclass
class LoadedTextureData:
    """Image data of one texture, read from disk and waiting to become a texture."""

    index: int = 0
    file_name: str = ""
    format: TextureFormat = TextureFormat.INVALID
    width: int = 0
    height: int = 0
    num_levels: int = 0
    data: bytes = b""


@dataclass
class MaterialTextures:
    """Material record as used for drawing: packed factors and texture indices."""

    base_color_factor: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    metallic_roughness_normal_occlusion: tuple[float, float, float, float] = (0.0, 1.0, 1.0, 1.0)
    clearcoat_transmission_thickness: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    emissive_factor_alpha_cutoff: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    base_color_texture: int = 0
    emissive_texture: int = 0
    normal_texture: int = 0
    transmission_texture: int = 0


def is_ktx_file(file_name: str) -> bool:
    """True if ``file_name`` ends in ``.ktx`` or ``.KTX``."""
    return file_name.endswith(".ktx") or file_name.endswith(".KTX")


def _convert_material(material: Material) -> MaterialTextures:
    emissive = tuple(material.emissive_factor)
    return MaterialTextures(
        base_color_factor=tuple(material.base_color_factor),
        metallic_roughness_normal_occlusion=(material.metallic_factor, material.roughness, 1.0, 1.0),
        clearcoat_transmission_thickness=(1.0, 1.0, material.transparency_factor, 1.0),
        emissive_factor_alpha_cutoff=(emissive[0], emissive[1], emissive[2], material.alpha_test),
    )


def _take(data: bytes, pos: int, size: int) -> bytes:
    if pos + size > len(data):
        raise ValueError("truncated KTX file")
    return data[pos : pos + size]


def _parse_ktx1(data: bytes, file_name: str) -> LoadedTextureData:
    if not data.startswith(KTX1_IDENTIFIER):
        raise ValueError(f"Failed to load {file_name}: not a KTX 1 file")
    pos = len(KTX1_IDENTIFIER)
    raw_endianness = _take(data, pos, 4)
    if struct.unpack("<I", raw_endianness)[0] == KTX1_ENDIANNESS:
        order = "<"
    elif struct.unpack(">I", raw_endianness)[0] == KTX1_ENDIANNESS:
        order = ">"
    else:
        raise ValueError(f"Failed to load {file_name}: bad endianness marker")
    pos += 4
    (
        _gl_type,
        _gl_type_size,
        _gl_format,
        gl_internal_format,
        _gl_base_internal_format,
        width,
        height,
        _depth,
        _array_elements,
        faces,
        levels,
        kv_bytes,
    ) = struct.unpack(f"{order}12I", _take(data, pos, 4 * (_HEADER_FIELDS - 1)))
    pos += 4 * (_HEADER_FIELDS - 1)
    _take(data, pos, kv_bytes)
    pos += kv_bytes

    texture_format = _GL_FORMATS.get(gl_internal_format)
    if texture_format is None:
        raise ValueError(f"Unsupported pixel format ({gl_internal_format}) in {file_name}")

    num_levels = max(1, levels)
    faces = max(1, faces)
    chunks = []
    for _ in range(num_levels):
        (image_size,) = struct.unpack(f"{order}I", _take(data, pos, 4))
        pos += 4
        for _ in range(faces):
            chunks.append(_take(data, pos, image_size))
            pos += image_size + (3 - (image_size + 3) % 4)

    return LoadedTextureData(
        file_name=file_name,
        format=texture_format,
        width=width,
        height=height,
        num_levels=num_levels,
        data=b"".join(chunks),
    )


def _load_texture_data(file_name: str) -> LoadedTextureData:
    if not is_ktx_file(file_name):
        logger.warning("Unable to load not-KTX file %s", file_name)
        return LoadedTextureData(file_name=file_name)
    return _parse_ktx1(Path(file_name).read_bytes(), file_name)


@dataclass
class TextureLoadQueue:
    """Reads the textures materials need and hands them out one per call.

    ``request_material_textures`` may be called from several threads at once;
    ``process_one`` creates at most one texture per call to avoid stutter.
    """

    texture_files: Sequence[str]
    materials: Sequence[Material]
    cache: list[int | None] = field(default_factory=list)
    loaded: list[LoadedTextureData] = field(default_factory=list)
    materials_gpu: list[MaterialTextures] = field(init=False)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        self.materials_gpu = [_convert_material(m) for m in self.materials]

    def _start_loading(self, texture_id: int) -> None:
        if texture_id == -1:
            return
        if len(self.cache) <= texture_id:
            self.cache.extend([None] * (texture_id + 1 - len(self.cache)))
        not_in_cache = self.cache[texture_id] is None
        not_in_queue = all(d.index != texture_id for d in self.loaded)
        if not_in_cache and not_in_queue:
            texture = _load_texture_data(self.texture_files[texture_id])
            texture.index = texture_id
            self.loaded.append(texture)

    def request_material_textures(self, material: Material) -> MaterialTextures:
        """Queue the material's textures not yet cached or queued; return its draw record."""
        result = _convert_material(material)
        with self._lock:
            for texture_id in (
                material.base_color_texture,
                material.emissive_texture,
                material.normal_texture,
                material.opacity_texture,
            ):
                self._start_loading(texture_id)
        return result

    def _cached(self, texture_id: int) -> int:
        if 0 <= texture_id < len(self.cache):
            return self.cache[texture_id] or 0
        return 0

    def process_one(self, create_texture: Callable[[LoadedTextureData], int]) -> bool:
        """Turn the most recently loaded image into a texture and update all materials.

        ``create_texture`` receives the image data and returns the texture's index.
        Returns False when nothing was waiting.
        """
        with self._lock:
            if not self.loaded:
                return False
            texture = self.loaded.pop()

        handle = create_texture(texture)

        with self._lock:
            if len(self.cache) <= texture.index:
                self.cache.extend([None] * (texture.index + 1 - len(self.cache)))
            self.cache[texture.index] = handle
            if len(self.materials) != len(self.materials_gpu):
                raise ValueError("material lists are out of step")
            for mtl, gpu in zip(self.materials, self.materials_gpu):
                gpu.base_color_texture = self._cached(mtl.base_color_texture)
                gpu.emissive_texture = self._cached(mtl.emissive_texture)
                gpu.normal_texture = self._cached(mtl.normal_texture)
                gpu.transmission_texture = self._cached(mtl.opacity_texture)
        return True