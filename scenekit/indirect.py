"""Indirect draw command lists built from a scene and its mesh data."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Callable

from scenekit.scene import Scene
from scenekit.vtxdata import MeshData

_COUNT = struct.Struct("<I")
_COMMAND = struct.Struct("<IIIiI")

COMMAND_SIZE = _COMMAND.size


@dataclass
class DrawIndexedIndirectCommand:
    """Arguments of one indexed indirect draw."""

    count: int = 0
    instance_count: int = 0
    first_index: int = 0
    base_vertex: int = 0
    base_instance: int = 0


@dataclass
class DrawData:
    """Per-draw lookup of a node transform and a material."""

    transform_id: int = 0
    material_id: int = 0


@dataclass
class IndirectBuffer:
    """A list of draw commands laid out as ``u32 count`` followed by the commands."""

    draw_commands: list[DrawIndexedIndirectCommand] = field(default_factory=list)

    def select_to(
        self, target: IndirectBuffer, predicate: Callable[[DrawIndexedIndirectCommand], bool]
    ) -> None:
        """Replace ``target``'s commands with copies of those matching ``predicate``."""
        target.draw_commands = [
            DrawIndexedIndirectCommand(**vars(c)) for c in self.draw_commands if predicate(c)
        ]

    def to_bytes(self) -> bytes:
        """Serialise as the count followed by each command."""
        parts = [_COUNT.pack(len(self.draw_commands))]
        parts.extend(
            _COMMAND.pack(c.count, c.instance_count, c.first_index, c.base_vertex, c.base_instance)
            for c in self.draw_commands
        )
        return b"".join(parts)


def build_draw_commands(mesh_data: MeshData, scene: Scene) -> tuple[IndirectBuffer, list[DrawData]]:
    """Create one draw command and one draw-data record per scene node that has a mesh.

    Raises ValueError when the number of mesh nodes differs from the number of meshes.
    """
    mesh_count = mesh_data.file_header().mesh_count
    if len(scene.mesh_for_node) != mesh_count:
        raise ValueError(
            f"scene has {len(scene.mesh_for_node)} mesh nodes but mesh data holds {mesh_count} meshes"
        )

    commands = []
    draw_data = []
    for dd_index, (node, mesh_index) in enumerate(scene.mesh_for_node.items()):
        mesh = mesh_data.meshes[mesh_index]
        commands.append(
            DrawIndexedIndirectCommand(
                count=mesh.lod_indices_count(0),
                instance_count=1,
                first_index=mesh.index_offset,
                base_vertex=mesh.vertex_offset,
                base_instance=dd_index,
            )
        )
        draw_data.append(DrawData(transform_id=node, material_id=mesh.material_id))
    return IndirectBuffer(commands), draw_data