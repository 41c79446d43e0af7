import io

import numpy as np
import pytest

from scenekit.scene import (
    MAX_NODE_LEVEL,
    Hierarchy,
    Scene,
    add_node,
    delete_scene_nodes,
    dump_scene_to_dot,
    dump_transforms,
    find_node_by_name,
    get_node_name,
    load_scene,
    mark_as_changed,
    mat4_is_identity,
    merge_scenes,
    print_changed_nodes,
    read_string_list,
    recalculate_global_transforms,
    save_scene,
    set_node_name,
    shift_nodes,
    write_string_list,
)


def _translation(x, y, z):
    m = np.eye(4, dtype=np.float32)
    m[:3, 3] = (x, y, z)
    return m


def _children(scene, node):
    result = []
    c = scene.hierarchy[node].first_child
    while c != -1:
        result.append(c)
        c = scene.hierarchy[c].next_sibling
    return result


def _build_scene():
    scene = Scene()
    root = add_node(scene, -1, 0)
    a = add_node(scene, root, 1)
    b = add_node(scene, root, 1)
    c = add_node(scene, a, 2)
    for node, name in zip((root, a, b, c), ("root", "a", "b", "c")):
        set_node_name(scene, node, name)
    return scene, (root, a, b, c)


def test_add_node_links_children_in_order():
    scene, (root, a, b, c) = _build_scene()
    assert _children(scene, root) == [a, b]
    assert _children(scene, a) == [c]
    assert scene.hierarchy[a].parent == root
    assert scene.hierarchy[c].parent == a
    assert scene.hierarchy[a].last_sibling == b
    assert len(scene.local_transform) == len(scene.hierarchy) == len(scene.global_transform)


def test_names_lookup():
    scene, (root, a, b, c) = _build_scene()
    assert find_node_by_name(scene, "b") == b
    assert find_node_by_name(scene, "missing") == -1
    assert get_node_name(scene, c) == "c"
    extra = add_node(scene, root, 1)
    assert get_node_name(scene, extra) == ""


def test_recalculate_global_transforms_composes_parents():
    scene, (root, a, b, c) = _build_scene()
    scene.local_transform[root] = _translation(1, 0, 0)
    scene.local_transform[a] = _translation(0, 2, 0)
    scene.local_transform[c] = _translation(0, 0, 3)
    mark_as_changed(scene, root)
    assert recalculate_global_transforms(scene) is True
    assert np.allclose(scene.global_transform[c][:3, 3], [1, 2, 3])
    assert np.allclose(scene.global_transform[b][:3, 3], [1, 0, 0])
    assert all(not level for level in scene.changed_at_this_frame)
    assert recalculate_global_transforms(scene) is False


def test_mark_as_changed_groups_by_level():
    scene, (root, a, b, c) = _build_scene()
    mark_as_changed(scene, a)
    assert scene.changed_at_this_frame[1] == [a]
    assert scene.changed_at_this_frame[2] == [c]
    assert len(scene.changed_at_this_frame) == MAX_NODE_LEVEL


def test_string_list_bytes_and_round_trip():
    buf = io.BytesIO()
    write_string_list(buf, ["ab"])
    assert buf.getvalue() == b"\x01\x00\x00\x00\x02\x00\x00\x00ab\x00"

    items = ["", "node", "Material: Glass"]
    buf = io.BytesIO()
    write_string_list(buf, items)
    buf.seek(0)
    assert read_string_list(buf) == items


def test_save_load_round_trip(tmp_path):
    scene, (root, a, b, c) = _build_scene()
    scene.local_transform[a] = _translation(4, 5, 6)
    scene.mesh_for_node = {a: 0, c: 1}
    scene.material_for_node = {a: 1, c: 0}
    scene.material_names = ["m0", "m1"]
    path = tmp_path / "test.scene"
    save_scene(path, scene)

    loaded = load_scene(path)
    assert loaded.hierarchy == scene.hierarchy
    assert loaded.mesh_for_node == scene.mesh_for_node
    assert loaded.material_for_node == scene.material_for_node
    assert loaded.name_for_node == scene.name_for_node
    assert loaded.node_names == scene.node_names
    assert loaded.material_names == scene.material_names
    for got, want in zip(loaded.local_transform, scene.local_transform):
        assert np.allclose(got, want)
    assert np.allclose(loaded.global_transform[c][:3, 3], [4, 5, 6])
    assert all(not level for level in loaded.changed_at_this_frame)


def test_load_without_names(tmp_path):
    scene = Scene()
    root = add_node(scene, -1, 0)
    add_node(scene, root, 1)
    path = tmp_path / "plain.scene"
    save_scene(path, scene)
    loaded = load_scene(path)
    assert loaded.node_names == []
    assert loaded.name_for_node == {}
    assert loaded.hierarchy == scene.hierarchy


def test_load_truncated_raises(tmp_path):
    scene, _ = _build_scene()
    path = tmp_path / "full.scene"
    save_scene(path, scene)
    short = tmp_path / "short.scene"
    short.write_bytes(path.read_bytes()[:10])
    with pytest.raises(ValueError):
        load_scene(short)


def test_load_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_scene(tmp_path / "nope.scene")


def test_mat4_is_identity():
    assert mat4_is_identity(np.eye(4)) is True
    assert mat4_is_identity(_translation(1, 0, 0)) is False


def test_dump_transforms_appends(tmp_path):
    scene, _ = _build_scene()
    scene.local_transform[1] = _translation(1, 2, 3)
    path = tmp_path / "dump.txt"
    dump_transforms(path, scene)
    first = path.read_text()
    assert "Node[0].localTransform: Identity" in first
    assert "Node[1].localTransform: \n" in first
    dump_transforms(path, scene)
    assert path.read_text() == first + first


def test_print_changed_nodes():
    scene, (root, a, b, c) = _build_scene()
    mark_as_changed(scene, root)
    out = io.StringIO()
    print_changed_nodes(scene, out)
    text = out.getvalue()
    assert "Changed at level(0):" in text
    assert f" Node {a}. Parent = {root}; LocalTransform: Identity" in text
    assert " ParentGlobalTransform: " in text


def test_dump_scene_to_dot(tmp_path):
    scene, (root, a, b, c) = _build_scene()
    path = tmp_path / "g.dot"
    visited = [0] * len(scene.hierarchy)
    visited[b] = 1
    dump_scene_to_dot(path, scene, visited)
    text = path.read_text()
    assert text.startswith("digraph G\n{\n")
    assert text.endswith("}\n")
    assert f'n{root} [label="root" ]' in text
    assert f'n{b} [label="b" , color = red]' in text
    assert f"\t n{a} -> n{c}\n" in text


def test_shift_nodes_keeps_missing_links():
    scene, (root, a, b, c) = _build_scene()
    before = [Hierarchy(**vars(h)) for h in scene.hierarchy]
    shift_nodes(scene, 0, len(scene.hierarchy), 5)
    assert scene.hierarchy[root].parent == -1
    assert scene.hierarchy[root].first_child == before[root].first_child + 5
    assert scene.hierarchy[c].first_child == -1
    assert scene.hierarchy[a].level == before[a].level


def test_merge_scenes_links_roots():
    first, _ = _build_scene()
    first.mesh_for_node = {1: 0}
    second = Scene()
    r = add_node(second, -1, 0)
    child = add_node(second, r, 1)
    set_node_name(second, r, "second")
    second.mesh_for_node = {child: 0}
    mesh_counts = [3, 2]

    merged = merge_scenes([first, second], [np.eye(4), _translation(7, 0, 0)], mesh_counts)
    n1 = len(first.hierarchy)
    assert len(merged.hierarchy) == 1 + n1 + len(second.hierarchy)
    assert get_node_name(merged, 0) == "NewRoot"
    assert merged.hierarchy[1].parent == 0
    assert merged.hierarchy[1].next_sibling == 1 + n1
    assert merged.hierarchy[1 + n1].next_sibling == -1
    assert merged.hierarchy[1 + n1].parent == 0
    for i, h in enumerate(first.hierarchy):
        assert merged.hierarchy[1 + i].level == h.level + 1
    assert merged.mesh_for_node[2] == 0
    assert merged.mesh_for_node[1 + n1 + child] == mesh_counts[0]
    assert get_node_name(merged, 1 + n1) == "second"
    assert np.allclose(merged.local_transform[1 + n1][:3, 3], [7, 0, 0])
    assert first.hierarchy[1].parent == 0


def test_merge_scenes_materials_flag():
    a = Scene()
    add_node(a, -1, 0)
    a.material_names = ["x"]
    a.material_for_node = {0: 0}
    b = Scene()
    add_node(b, -1, 0)
    b.material_names = ["y"]
    b.material_for_node = {0: 0}

    kept = merge_scenes([a, b], [], [], merge_meshes=False, merge_materials=False)
    assert kept.material_names == a.material_names
    assert kept.material_for_node == {1: 0, 2: 0}

    merged = merge_scenes([a, b], [], [], merge_meshes=False, merge_materials=True)
    assert merged.material_names == a.material_names + b.material_names
    assert merged.material_for_node[2] == len(a.material_names)


def test_merge_no_scenes_gives_root_only():
    merged = merge_scenes([], [], [])
    assert [get_node_name(merged, i) for i in range(len(merged.hierarchy))] == ["NewRoot"]


def test_delete_scene_nodes_removes_subtree():
    scene, (root, a, b, c) = _build_scene()
    scene.mesh_for_node = {a: 0, b: 1, c: 2}
    delete_scene_nodes(scene, [a])
    names = [get_node_name(scene, i) for i in range(len(scene.hierarchy))]
    assert names == ["root", "b"]
    assert len(scene.local_transform) == len(scene.hierarchy) == len(scene.global_transform)
    new_b = find_node_by_name(scene, "b")
    assert scene.hierarchy[root].first_child == new_b
    assert scene.hierarchy[new_b].parent == root
    assert scene.hierarchy[new_b].next_sibling == -1
    assert scene.mesh_for_node == {new_b: 1}
    assert find_node_by_name(scene, "c") == -1