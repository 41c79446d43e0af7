"""Scene graph storage: node hierarchy, transforms, components and their binary file format."""

from __future__ import annotations

import io
import struct
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import BinaryIO, Iterator, Mapping, Sequence, TextIO

import numpy as np

MAX_NODE_LEVEL = 16

_HIERARCHY_FIELDS = 5
_MAT4_BYTES = 16 * 4


def _identity() -> np.ndarray:
    return np.eye(4, dtype=np.float32)


@dataclass
class Hierarchy:
    """Links of one scene node; -1 means "none"."""

    parent: int = -1
    first_child: int = -1
    next_sibling: int = -1
    last_sibling: int = -1
    level: int = 0


def _new_changed_lists() -> list[list[int]]:
    return [[] for _ in range(MAX_NODE_LEVEL)]


@dataclass
class Scene:
    """Flattened scene graph with per-node components."""

    local_transform: list[np.ndarray] = field(default_factory=list)
    global_transform: list[np.ndarray] = field(default_factory=list)
    changed_at_this_frame: list[list[int]] = field(default_factory=_new_changed_lists)
    hierarchy: list[Hierarchy] = field(default_factory=list)
    mesh_for_node: dict[int, int] = field(default_factory=dict)
    material_for_node: dict[int, int] = field(default_factory=dict)
    name_for_node: dict[int, int] = field(default_factory=dict)
    node_names: list[str] = field(default_factory=list)
    material_names: list[str] = field(default_factory=list)


def _children(scene: Scene, node: int) -> Iterator[int]:
    child = scene.hierarchy[node].first_child
    while child != -1:
        yield child
        child = scene.hierarchy[child].next_sibling


def add_node(scene: Scene, parent: int, level: int) -> int:
    """Append a node under ``parent`` at ``level`` and return its index."""
    node = len(scene.hierarchy)
    scene.local_transform.append(_identity())
    scene.global_transform.append(_identity())
    nodes = scene.hierarchy
    nodes.append(Hierarchy(parent=parent, last_sibling=-1))
    if parent > -1:
        first = nodes[parent].first_child
        if first == -1:
            nodes[parent].first_child = node
            nodes[node].last_sibling = node
        else:
            dest = nodes[first].last_sibling
            if dest <= -1:
                dest = first
                while nodes[dest].next_sibling != -1:
                    dest = nodes[dest].next_sibling
            nodes[dest].next_sibling = node
            nodes[first].last_sibling = node
    nodes[node].level = level
    nodes[node].next_sibling = -1
    nodes[node].first_child = -1
    return node


def mark_as_changed(scene: Scene, node: int) -> None:
    """Queue ``node`` and all of its descendants for a global transform update."""
    stack = [node]
    while stack:
        current = stack.pop()
        scene.changed_at_this_frame[scene.hierarchy[current].level].append(current)
        stack.extend(reversed(list(_children(scene, current))))


def find_node_by_name(scene: Scene, name: str) -> int:
    """Return the first node called ``name``, or -1."""
    for node in range(len(scene.local_transform)):
        string_id = scene.name_for_node.get(node, -1)
        if string_id > -1 and scene.node_names[string_id] == name:
            return node
    return -1


def get_node_name(scene: Scene, node: int) -> str:
    """Return the name of ``node``, or an empty string if it has none."""
    string_id = scene.name_for_node.get(node, -1)
    return scene.node_names[string_id] if string_id > -1 else ""


def set_node_name(scene: Scene, node: int, name: str) -> None:
    """Give ``node`` a new name."""
    scene.name_for_node[node] = len(scene.node_names)
    scene.node_names.append(name)


def recalculate_global_transforms(scene: Scene) -> bool:
    """Update global transforms of queued nodes level by level; True if anything changed."""
    was_updated = False
    root_level = scene.changed_at_this_frame[0]
    if root_level:
        c = root_level[0]
        scene.global_transform[c] = np.array(scene.local_transform[c], copy=True)
        root_level.clear()
        was_updated = True

    for level in scene.changed_at_this_frame[1:]:
        for c in level:
            p = scene.hierarchy[c].parent
            scene.global_transform[c] = scene.global_transform[p] @ scene.local_transform[c]
        if level:
            was_updated = True
        level.clear()
    return was_updated


# --- binary helpers ------------------------------------------------------------


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ValueError("unexpected end of data")
    return data


def _read_u32(stream: BinaryIO) -> int:
    return struct.unpack("<I", _read_exact(stream, 4))[0]


def _write_u32(stream: BinaryIO, value: int) -> None:
    stream.write(struct.pack("<I", value))


def write_string_list(stream: BinaryIO, items: Sequence[str]) -> None:
    """Write a count followed by length-prefixed, NUL-terminated strings."""
    _write_u32(stream, len(items))
    for item in items:
        encoded = item.encode("utf-8")
        _write_u32(stream, len(encoded))
        stream.write(encoded + b"\x00")


def read_string_list(stream: BinaryIO) -> list[str]:
    """Read a list written by :func:`write_string_list`."""
    count = _read_u32(stream)
    items = []
    for _ in range(count):
        length = _read_u32(stream)
        raw = _read_exact(stream, length + 1)
        items.append(raw[:length].decode("utf-8"))
    return items


def _read_matrices(stream: BinaryIO, count: int) -> list[np.ndarray]:
    data = np.frombuffer(_read_exact(stream, _MAT4_BYTES * count), dtype="<f4")
    # stored column by column
    return [m.T.astype(np.float32) for m in data.reshape(count, 4, 4)]


def _write_matrices(stream: BinaryIO, matrices: Sequence[np.ndarray]) -> None:
    for m in matrices:
        stream.write(np.asarray(m, dtype="<f4").T.tobytes(order="C"))


def _read_hierarchy(stream: BinaryIO, count: int) -> list[Hierarchy]:
    data = np.frombuffer(_read_exact(stream, 4 * _HIERARCHY_FIELDS * count), dtype="<i4")
    return [Hierarchy(*(int(v) for v in row)) for row in data.reshape(count, _HIERARCHY_FIELDS)]


def _write_hierarchy(stream: BinaryIO, nodes: Sequence[Hierarchy]) -> None:
    for h in nodes:
        stream.write(struct.pack("<5i", h.parent, h.first_child, h.next_sibling, h.last_sibling, h.level))


def _read_map(stream: BinaryIO) -> dict[int, int]:
    size = _read_u32(stream)
    values = struct.unpack(f"<{size}I", _read_exact(stream, 4 * size))
    return {values[2 * i]: values[2 * i + 1] for i in range(size // 2)}


def _write_map(stream: BinaryIO, mapping: Mapping[int, int]) -> None:
    flat = [x for key, value in mapping.items() for x in (key, value)]
    _write_u32(stream, len(flat))
    stream.write(struct.pack(f"<{len(flat)}I", *flat))


def load_scene(path: str | Path) -> Scene:
    """Load a scene file and recompute its global transforms."""
    data = Path(path).read_bytes()
    stream = io.BytesIO(data)
    scene = Scene()

    count = _read_u32(stream)
    scene.local_transform = _read_matrices(stream, count)
    scene.global_transform = _read_matrices(stream, count)
    scene.hierarchy = _read_hierarchy(stream, count)

    scene.material_for_node = _read_map(stream)
    scene.mesh_for_node = _read_map(stream)

    if stream.tell() < len(data):
        scene.name_for_node = _read_map(stream)
        scene.node_names = read_string_list(stream)
        scene.material_names = read_string_list(stream)

    if scene.hierarchy:
        mark_as_changed(scene, 0)
        recalculate_global_transforms(scene)
    return scene


def save_scene(path: str | Path, scene: Scene) -> None:
    """Write ``scene`` to ``path`` in the binary scene format."""
    with open(path, "wb") as stream:
        _write_u32(stream, len(scene.hierarchy))
        _write_matrices(stream, scene.local_transform)
        _write_matrices(stream, scene.global_transform)
        _write_hierarchy(stream, scene.hierarchy)
        _write_map(stream, scene.material_for_node)
        _write_map(stream, scene.mesh_for_node)
        if scene.node_names and scene.name_for_node:
            _write_map(stream, scene.name_for_node)
            write_string_list(stream, scene.node_names)
            write_string_list(stream, scene.material_names)


# --- diagnostics ---------------------------------------------------------------


def mat4_is_identity(m: np.ndarray) -> bool:
    """True if ``m`` is exactly the 4x4 identity matrix."""
    return bool(np.array_equal(np.asarray(m), np.eye(4)))


def _format_mat4(m: np.ndarray) -> str:
    if mat4_is_identity(m):
        return "Identity\n"
    m = np.asarray(m)
    lines = ["".join(f"{float(v):f} ;" for v in m[:, col]) + "\n" for col in range(4)]
    return "\n" + "".join(lines)


def dump_transforms(path: str | Path, scene: Scene) -> None:
    """Append a textual dump of all node transforms to ``path``."""
    with open(path, "a") as out:
        for i, (local, glob) in enumerate(zip(scene.local_transform, scene.global_transform)):
            out.write(f"Node[{i}].localTransform: ")
            out.write(_format_mat4(local))
            out.write(f"Node[{i}].globalTransform: ")
            out.write(_format_mat4(glob))
            out.write(
                f"Node[{i}].globalDet = {float(np.linalg.det(glob)):f}; "
                f"localDet = {float(np.linalg.det(local)):f}\n"
            )


def print_changed_nodes(scene: Scene, out: TextIO | None = None) -> None:
    """Print the queued changed nodes, level by level, until the first empty level."""
    out = out if out is not None else sys.stdout
    for level, changed in enumerate(scene.changed_at_this_frame):
        if not changed:
            break
        out.write(f"Changed at level({level}):\n")
        for c in changed:
            p = scene.hierarchy[c].parent
            out.write(f" Node {c}. Parent = {p}; LocalTransform: ")
            out.write(_format_mat4(scene.local_transform[c]))
            if p > -1:
                out.write(" ParentGlobalTransform: ")
                out.write(_format_mat4(scene.global_transform[p]))


def dump_scene_to_dot(path: str | Path, scene: Scene, visited: Sequence[int] | None = None) -> None:
    """Write the hierarchy as a GraphViz digraph; visited nodes are coloured red."""
    with open(path, "w") as out:
        out.write("digraph G\n{\n")
        for i in range(len(scene.global_transform)):
            name = scene.node_names[scene.name_for_node[i]] if i in scene.name_for_node else ""
            extra = ", color = red" if visited is not None and visited[i] else ""
            out.write(f'n{i} [label="{name}" {extra}]\n')
        for i, h in enumerate(scene.hierarchy):
            if h.parent > -1:
                out.write(f"\t n{h.parent} -> n{i}\n")
        out.write("}\n")


# --- structural edits ----------------------------------------------------------


def shift_nodes(scene: Scene, start_offset: int, node_count: int, shift_amount: int) -> None:
    """Shift every valid link of ``node_count`` nodes starting at ``start_offset``."""
    for h in scene.hierarchy[start_offset : start_offset + node_count]:
        if h.parent > -1:
            h.parent += shift_amount
        if h.first_child > -1:
            h.first_child += shift_amount
        if h.next_sibling > -1:
            h.next_sibling += shift_amount
        if h.last_sibling > -1:
            h.last_sibling += shift_amount


def _merge_maps(target: dict[int, int], other: Mapping[int, int], index_offset: int, item_offset: int) -> None:
    for key, value in other.items():
        target[key + index_offset] = value + item_offset


def merge_scenes(
    scenes: Sequence[Scene],
    root_transforms: Sequence[np.ndarray] | None = None,
    mesh_counts: Sequence[int] | None = None,
    merge_meshes: bool = True,
    merge_materials: bool = True,
) -> Scene:
    """Glue ``scenes`` together under a new root node and return the combined scene.

    With ``merge_meshes`` mesh indices of each scene are shifted by the preceding
    ``mesh_counts``; with ``merge_materials`` material indices and names are
    concatenated, otherwise the first scene's material names are used as is.
    """
    root_transforms = list(root_transforms or [])
    mesh_counts = list(mesh_counts or [])

    scene = Scene()
    scene.hierarchy = [Hierarchy(parent=-1, first_child=1, next_sibling=-1, last_sibling=-1, level=0)]
    scene.name_for_node[0] = 0
    scene.node_names = ["NewRoot"]
    scene.local_transform.append(_identity())
    scene.global_transform.append(_identity())

    if not scenes:
        return scene

    offs = 1
    mesh_offs = 0
    name_offs = len(scene.node_names)
    material_offs = 0
    mesh_count_iter = iter(mesh_counts)

    if not merge_materials:
        scene.material_names = list(scenes[0].material_names)

    for s in scenes:
        scene.local_transform.extend(np.array(m, copy=True) for m in s.local_transform)
        scene.global_transform.extend(np.array(m, copy=True) for m in s.global_transform)
        scene.hierarchy.extend(replace(h) for h in s.hierarchy)
        scene.node_names.extend(s.node_names)
        if merge_materials:
            scene.material_names.extend(s.material_names)

        node_count = len(s.hierarchy)
        shift_nodes(scene, offs, node_count, offs)

        _merge_maps(scene.mesh_for_node, s.mesh_for_node, offs, mesh_offs if merge_meshes else 0)
        _merge_maps(scene.material_for_node, s.material_for_node, offs, material_offs if merge_materials else 0)
        _merge_maps(scene.name_for_node, s.name_for_node, offs, name_offs)

        offs += node_count
        material_offs += len(s.material_names)
        name_offs += len(s.node_names)

        if merge_meshes:
            mesh_offs += next(mesh_count_iter)

    # relink the old roots as siblings under the new root
    offs = 1
    for idx, s in enumerate(scenes):
        node_count = len(s.hierarchy)
        is_last = idx == len(scenes) - 1
        scene.hierarchy[offs].next_sibling = -1 if is_last else offs + node_count
        scene.hierarchy[offs].parent = 0
        if root_transforms:
            scene.local_transform[offs] = root_transforms[idx] @ scene.local_transform[offs]
        offs += node_count

    for h in scene.hierarchy[1:]:
        h.level += 1
    return scene


def delete_scene_nodes(scene: Scene, nodes_to_delete: Sequence[int]) -> None:
    """Remove the given nodes and all their descendants, renumbering the rest."""
    old = scene.hierarchy

    to_delete: set[int] = set()
    stack = list(nodes_to_delete)
    while stack:
        node = stack.pop()
        if node in to_delete:
            continue
        to_delete.add(node)
        stack.extend(_children(scene, node))

    new_indices = [-1] * len(old)
    kept = [i for i in range(len(old)) if i not in to_delete]
    for new_index, old_index in enumerate(kept):
        new_indices[old_index] = new_index

    def follow(node: int) -> int:
        while node != -1 and new_indices[node] == -1:
            node = old[node].next_sibling
        return -1 if node == -1 else new_indices[node]

    scene.hierarchy = [
        Hierarchy(
            parent=new_indices[old[i].parent] if old[i].parent != -1 else -1,
            first_child=follow(old[i].first_child),
            next_sibling=follow(old[i].next_sibling),
            last_sibling=follow(old[i].last_sibling),
            level=old[i].level,
        )
        for i in kept
    ]
    scene.local_transform = [scene.local_transform[i] for i in kept]
    scene.global_transform = [scene.global_transform[i] for i in kept]

    def shift_map(items: Mapping[int, int]) -> dict[int, int]:
        return {
            new_indices[key]: value
            for key, value in items.items()
            if key < len(new_indices) and new_indices[key] != -1
        }

    scene.mesh_for_node = shift_map(scene.mesh_for_node)
    scene.material_for_node = shift_map(scene.material_for_node)
    scene.name_for_node = shift_map(scene.name_for_node)