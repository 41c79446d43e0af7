import struct

import pytest

from scenekit.indirect import (
    DrawData,
    DrawIndexedIndirectCommand,
    IndirectBuffer,
    build_draw_commands,
)
from scenekit.scene import Scene, add_node
from scenekit.vtxdata import Mesh, MeshData


def _mesh(index_offset, vertex_offset, count, material_id):
    lods = [0] * 8
    lods[0] = index_offset
    lods[1] = index_offset + count
    return Mesh(
        lod_count=1,
        index_offset=index_offset,
        vertex_offset=vertex_offset,
        lod_offset=lods,
        material_id=material_id,
    )


def _setup():
    mesh_data = MeshData(meshes=[_mesh(0, 0, 6, 2), _mesh(6, 4, 3, 5)])
    scene = Scene()
    root = add_node(scene, -1, 0)
    a = add_node(scene, root, 1)
    b = add_node(scene, root, 1)
    scene.mesh_for_node[a] = 1
    scene.mesh_for_node[b] = 0
    return mesh_data, scene, a, b


def test_build_draw_commands():
    mesh_data, scene, a, b = _setup()
    buffer, draw_data = build_draw_commands(mesh_data, scene)
    assert buffer.draw_commands == [
        DrawIndexedIndirectCommand(count=3, instance_count=1, first_index=6, base_vertex=4, base_instance=0),
        DrawIndexedIndirectCommand(count=6, instance_count=1, first_index=0, base_vertex=0, base_instance=1),
    ]
    assert draw_data == [DrawData(transform_id=a, material_id=5), DrawData(transform_id=b, material_id=2)]


def test_build_draw_commands_count_mismatch():
    mesh_data, scene, _, _ = _setup()
    mesh_data.meshes.append(_mesh(9, 0, 3, 0))
    with pytest.raises(ValueError):
        build_draw_commands(mesh_data, scene)


def test_select_to_filters_and_copies():
    mesh_data, scene, _, _ = _setup()
    buffer, draw_data = build_draw_commands(mesh_data, scene)
    target = IndirectBuffer([DrawIndexedIndirectCommand(count=99)])
    buffer.select_to(target, lambda c: draw_data[c.base_instance].material_id == 2)
    assert len(target.draw_commands) == 1
    assert target.draw_commands[0] == buffer.draw_commands[1]
    target.draw_commands[0].instance_count = 0
    assert buffer.draw_commands[1].instance_count == 1


def test_select_to_complementary_partition():
    mesh_data, scene, _, _ = _setup()
    buffer, draw_data = build_draw_commands(mesh_data, scene)
    opaque, transparent = IndirectBuffer(), IndirectBuffer()

    def is_odd(c):
        return draw_data[c.base_instance].material_id % 2 == 1

    buffer.select_to(opaque, lambda c: not is_odd(c))
    buffer.select_to(transparent, is_odd)
    assert len(opaque.draw_commands) + len(transparent.draw_commands) == len(buffer.draw_commands)


def test_to_bytes_layout():
    buffer = IndirectBuffer(
        [DrawIndexedIndirectCommand(count=3, instance_count=1, first_index=6, base_vertex=-2, base_instance=7)]
    )
    data = buffer.to_bytes()
    assert len(data) == 4 + 20
    assert struct.unpack_from("<I", data, 0) == (1,)
    assert struct.unpack_from("<IIIiI", data, 4) == (3, 1, 6, -2, 7)


def test_to_bytes_empty():
    assert IndirectBuffer().to_bytes() == b"\x00\x00\x00\x00"


def test_to_bytes_round_trip_from_scene():
    mesh_data, scene, _, _ = _setup()
    buffer, _ = build_draw_commands(mesh_data, scene)
    data = buffer.to_bytes()
    (count,) = struct.unpack_from("<I", data, 0)
    decoded = [
        DrawIndexedIndirectCommand(*values) for values in struct.iter_unpack("<IIIiI", data[4:])
    ]
    assert count == len(buffer.draw_commands)
    assert decoded == buffer.draw_commands