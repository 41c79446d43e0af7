# scenekit

Data structures and file formats for the CPU side of a real-time 3D renderer.

## Modules

- `scenekit.scene` — a flat scene graph. `Scene` holds local and global
  transforms (4x4 numpy arrays), a list of `Hierarchy` records (parent,
  first child, next sibling, last sibling, level) and node → mesh, material
  and name maps.
  - `add_node`, `set_node_name`, `get_node_name`, `find_node_by_name`
  - `mark_as_changed` queues a node and its subtree per level;
    `recalculate_global_transforms` updates the queued nodes and returns
    whether anything changed
  - `load_scene` / `save_scene` read and write the binary scene file;
    `read_string_list` / `write_string_list` handle its string lists
  - `merge_scenes` returns a new scene with the given scenes attached under a
    root node named `NewRoot`, optionally shifting mesh and material indices
    and applying root transforms
  - `delete_scene_nodes` removes nodes together with their descendants and
    renumbers the remaining nodes and maps
  - `shift_nodes`, `mat4_is_identity`, `dump_transforms`,
    `print_changed_nodes`, `dump_scene_to_dot` (GraphViz output)
- `scenekit.vtxdata` — mesh containers: `MeshData`, `Mesh` (with
  `lod_indices_count`), `MeshFileHeader`, `Material`, `MaterialFlags`,
  `BoundingBox`, `VertexStreams` (with `vertex_size`).
  - `load_mesh_data` / `save_mesh_data` for mesh files,
    `load_mesh_data_materials` / `save_mesh_data_materials` for material files,
    `load_bounding_boxes` / `save_bounding_boxes` for box files
  - `is_mesh_data_valid`, `is_mesh_materials_valid`, `is_mesh_hierarchy_valid`
  - `merge_mesh_data` appends several `MeshData` to one, shifting indices,
    offsets and material ids, and returns the resulting header
  - `recalculate_bounding_boxes` rebuilds boxes from FLOAT3 positions
  Reading a truncated or inconsistent file raises `ValueError`.
- `scenekit.mergeutil` — `merge_nodes_with_material` collapses every node
  using a named material into one merged mesh on a new node;
  `merge_material_lists` returns the concatenated materials and a list of
  unique texture files, with texture indices remapped.
- `scenekit.linecanvas` — `LineCanvas2D` and `LineCanvas3D` collect debug
  lines. The 3D canvas draws lines, gridded planes, boxes (`box`,
  `box_from_bounds`) and camera frusta, and `vertex_bytes` packs its vertices
  as little-endian float32 `pos.xyzw, color.rgba` records.
- `scenekit.indirect` — `build_draw_commands` creates one
  `DrawIndexedIndirectCommand` and one `DrawData` per mesh node (raising
  `ValueError` if node and mesh counts differ); `IndirectBuffer.select_to`
  filters commands into another buffer and `to_bytes` serialises them as a
  `u32` count followed by the commands.
- `scenekit.lazytextures` — `TextureLoadQueue` reads the KTX 1 images that
  materials reference (thread-safe `request_material_textures`) and turns one
  of them per `process_one` call into a texture through a callback you supply,
  updating the per-material `MaterialTextures` records. `is_ktx_file` checks
  the file name.

## Installation

```
pip install .
```

Only `numpy` is required.

## Example

```python
import numpy as np
from scenekit.scene import Scene, add_node, mark_as_changed, recalculate_global_transforms
from scenekit.linecanvas import LineCanvas3D

scene = Scene()
root = add_node(scene, -1, 0)
child = add_node(scene, root, 1)
scene.local_transform[child][:3, 3] = (1.0, 2.0, 3.0)
mark_as_changed(scene, root)
recalculate_global_transforms(scene)

canvas = LineCanvas3D()
canvas.box(np.eye(4, dtype=np.float32), (1.0, 1.0, 1.0), (1.0, 0.0, 0.0, 1.0))
data = canvas.vertex_bytes()
```

## What it does not do

scenekit prepares data only. It opens no window, talks to no graphics
device and draws nothing: line vertices and draw commands are returned as
Python objects or bytes for your own renderer to upload, and
`TextureLoadQueue` leaves texture creation to the callback passed to
`process_one`. It does not import models from other 3D formats; meshes and
scenes come from its own binary files or are built in code. Only KTX 1
textures in BC7, RGBA8, RG16F, RGBA16F and RGBA32F formats are read.

## Tests

```
pip install .[test]
pytest
```