"""Merging of scene nodes that share a material, and of material lists."""

from __future__ import annotations

from dataclasses import replace
from typing import Sequence

from scenekit.scene import Scene, add_node, delete_scene_nodes
from scenekit.vtxdata import Material, Mesh, MeshData

_TEXTURE_FIELDS = ("base_color_texture", "emissive_texture", "normal_texture", "opacity_texture")


def _shift_mesh_indices(mesh_data: MeshData, meshes_to_merge: Sequence[int]) -> int:
    """Rebase the merged meshes on one vertex offset; return where merged indices start."""
    min_vtx_offset = min(mesh_data.meshes[i].vertex_offset for i in meshes_to_merge)
    merge_count = 0
    for i in meshes_to_merge:
        mesh = mesh_data.meshes[i]
        delta = mesh.vertex_offset - min_vtx_offset
        count = mesh.lod_indices_count(0)
        start = mesh.index_offset
        mesh_data.index_data[start : start + count] = [v + delta for v in mesh_data.index_data[start : start + count]]
        mesh.vertex_offset = min_vtx_offset
        merge_count += count
    return len(mesh_data.index_data) - merge_count


def _merge_index_array(mesh_data: MeshData, meshes_to_merge: Sequence[int]) -> dict[int, int]:
    """Move merged meshes' indices to the end and append one mesh covering them all."""
    new_indices = [0] * len(mesh_data.index_data)
    merge_set = set(meshes_to_merge)
    copy_offset = 0
    merge_offset = _shift_mesh_indices(mesh_data, meshes_to_merge)

    merged_mesh_index = len(mesh_data.meshes) - len(meshes_to_merge)
    old_to_new: dict[int, int] = {}
    new_index = 0
    for midx, mesh in enumerate(mesh_data.meshes):
        should_merge = midx in merge_set
        old_to_new[midx] = merged_mesh_index if should_merge else new_index
        if not should_merge:
            new_index += 1

        count = mesh.lod_indices_count(0)
        block = mesh_data.index_data[mesh.index_offset : mesh.index_offset + count]
        mesh.index_offset = copy_offset
        if should_merge:
            new_indices[merge_offset : merge_offset + count] = block
            merge_offset += count
        else:
            new_indices[copy_offset : copy_offset + count] = block
            copy_offset += count

    mesh_data.index_data = new_indices

    source = mesh_data.meshes[meshes_to_merge[0]]
    last_mesh: Mesh = replace(source, lod_offset=list(source.lod_offset))
    last_mesh.index_offset = copy_offset
    last_mesh.lod_offset[0] = copy_offset
    last_mesh.lod_offset[1] = merge_offset
    last_mesh.lod_count = 1
    mesh_data.meshes.append(last_mesh)
    return old_to_new


def merge_nodes_with_material(scene: Scene, mesh_data: MeshData, material_name: str) -> None:
    """Merge all meshes of nodes using ``material_name`` into one mesh on one new node."""
    names = scene.material_names
    old_material = names.index(material_name) if material_name in names else len(names)

    to_delete = [
        node
        for node in range(len(scene.hierarchy))
        if node in scene.mesh_for_node and scene.material_for_node.get(node, -1) == old_material
    ]
    if not to_delete:
        raise ValueError(f"no scene node with a mesh uses material '{material_name}'")

    meshes_to_merge = [scene.mesh_for_node[node] for node in to_delete]
    old_to_new = _merge_index_array(mesh_data, meshes_to_merge)

    merge_set = set(meshes_to_merge)
    mesh_data.meshes = [m for i, m in enumerate(mesh_data.meshes) if i not in merge_set]

    for node, mesh in scene.mesh_for_node.items():
        scene.mesh_for_node[node] = old_to_new.get(mesh, 0)

    new_node = add_node(scene, 0, 1)
    scene.mesh_for_node[new_node] = len(mesh_data.meshes) - 1
    scene.material_for_node[new_node] = old_material

    delete_scene_nodes(scene, to_delete)


def merge_material_lists(
    old_materials: Sequence[Sequence[Material]],
    old_textures: Sequence[Sequence[str]],
) -> tuple[list[Material], list[str]]:
    """Concatenate material lists and unify their texture lists.

    Returns the combined materials, with texture indices pointing into the
    returned list of unique texture file names.
    """
    all_materials: list[Material] = []
    owner: list[int] = []
    for list_idx, materials in enumerate(old_materials):
        for material in materials:
            all_materials.append(replace(material))
            owner.append(list_idx)

    new_textures: list[str] = []
    texture_index: dict[str, int] = {}
    for textures in old_textures:
        for file in textures:
            if file not in texture_index:
                texture_index[file] = len(new_textures)
                new_textures.append(file)

    for material, list_idx in zip(all_materials, owner):
        for name in _TEXTURE_FIELDS:
            texture_id = getattr(material, name)
            if texture_id == -1:
                continue
            setattr(material, name, texture_index[old_textures[list_idx][texture_id]])

    return all_materials, new_textures