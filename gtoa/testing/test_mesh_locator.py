#!/usr/bin/env python3
"""
Tests for the mesh container and bucket-grid point location.
"""

import numpy as np
import pytest

from gtoa.light_modeling import mesh_locator
from gtoa.light_modeling.mesh import Mesh
from gtoa.light_modeling.mesh_locator import ElementIndex, locate_points, locate_voxels
from gtoa.light_modeling.voxel_grid import build_voxel_grid
from gtoa.utils.exceptions import GeometryError

from .meshes import UNIT_TET_NODES


def brute_force_best_min_weight(mesh, points):
    """Largest minimum barycentric weight of each point over all elements."""
    vertices = mesh.nodes[mesh.elements]
    edges = (vertices[:, 1:, :] - vertices[:, :1, :]).transpose(0, 2, 1)
    rhs = (points[:, np.newaxis, :] - vertices[np.newaxis, :, 0, :])[..., np.newaxis]
    lam = np.linalg.solve(edges[np.newaxis], rhs)[..., 0]
    weights = np.concatenate([1.0 - lam.sum(axis=-1, keepdims=True), lam], axis=-1)
    return weights.min(axis=-1).max(axis=1)


def reconstruct(mesh, location_map):
    located = location_map.located
    vertices = mesh.nodes[mesh.elements[location_map.element[located]]]
    return np.einsum('vn,vnd->vd', location_map.weights[located], vertices)


def test_unit_tetrahedron_location(unit_tet):
    index = ElementIndex.build(unit_tet)
    points = np.array([[0.25, 0.25, 0.25], [0.9, 0.9, 0.9], [2.0, 2.0, 2.0]])
    location_map = locate_points(index, points)

    np.testing.assert_array_equal(location_map.element, [0, -1, -1])
    np.testing.assert_allclose(location_map.weights[0], [0.25, 0.25, 0.25, 0.25])
    assert np.all(location_map.weights[0] > 0)
    assert location_map.n_located == 1


def test_weights_sum_to_one_and_reconstruct_points(cube):
    rng = np.random.default_rng(0)
    points = np.vstack([rng.uniform(0.0, 1.0, size=(300, 3)), cube.nodes])
    location_map = locate_points(ElementIndex.build(cube), points)

    assert location_map.located.all()
    np.testing.assert_allclose(location_map.weights.sum(axis=1), 1.0, atol=1e-6)
    np.testing.assert_allclose(reconstruct(cube, location_map), points, atol=1e-12)


def test_index_matches_brute_force_search(cube):
    rng = np.random.default_rng(1)
    points = rng.uniform(-0.2, 1.2, size=(200, 3))
    location_map = locate_points(ElementIndex.build(cube), points)

    best = brute_force_best_min_weight(cube, points)
    inside = best >= -1e-9
    np.testing.assert_array_equal(location_map.located, inside)
    np.testing.assert_allclose(location_map.weights[inside].min(axis=1), best[inside], atol=1e-12)


def test_slightly_negative_weight_is_accepted_not_clamped(unit_tet):
    index = ElementIndex.build(unit_tet)
    point = np.array([[-1e-12, 0.25, 0.25]])

    location_map = locate_points(index, point, loc_tol=1e-9)
    assert location_map.element[0] == 0
    assert location_map.weights[0, 1] < 0
    assert location_map.weights[0].sum() == pytest.approx(1.0)

    strict = locate_points(index, point, loc_tol=0.0)
    assert strict.element[0] == -1


def test_degenerate_elements_are_skipped():
    flat = np.array([[2.0, 0.0, 0.0], [3.0, 0.0, 0.0], [2.0, 1.0, 0.0], [3.0, 1.0, 0.0]])
    mesh = Mesh(np.vstack([UNIT_TET_NODES, flat]), [[0, 1, 2, 3], [4, 5, 6, 7]])
    index = ElementIndex.build(mesh)

    assert index.n_usable == 1
    location_map = locate_points(index, [[0.25, 0.25, 0.25], [2.5, 0.5, 0.0]])
    np.testing.assert_array_equal(location_map.element, [0, -1])


def test_all_degenerate_mesh_is_geometry_error():
    flat = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0]])
    with pytest.raises(GeometryError):
        ElementIndex.build(Mesh(flat, [[0, 1, 2, 3]]))


def test_mesh_validation():
    with pytest.raises(GeometryError):
        Mesh(UNIT_TET_NODES, np.zeros((0, 4), dtype=int))
    with pytest.raises(GeometryError):
        Mesh(UNIT_TET_NODES, [[0, 1, 2, 4]])
    with pytest.raises(GeometryError):
        Mesh(UNIT_TET_NODES, [[0.5, 1, 2, 3]])

    one_based = Mesh(UNIT_TET_NODES, np.array([[1.0, 2.0, 3.0, 4.0]]), index_base=1)
    np.testing.assert_array_equal(one_based.elements, [[0, 1, 2, 3]])
    assert one_based.element_volumes()[0] == pytest.approx(1.0 / 6.0)


def test_planar_triangle_mesh(flat_square):
    index = ElementIndex.build(flat_square)
    assert index.is_planar

    points = np.array([[0.25, 0.25, 5.0], [0.75, 0.75, 5.0], [0.25, 0.25, 6.0], [1.5, 0.5, 5.0]])
    location_map = locate_points(index, points)

    np.testing.assert_array_equal(location_map.element, [0, 1, -1, -1])
    np.testing.assert_allclose(location_map.weights[0], [0.5, 0.25, 0.25])
    np.testing.assert_allclose(location_map.weights[1], [0.25, 0.5, 0.25])


def test_non_planar_triangle_mesh_is_geometry_error():
    nodes = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 1.0]])
    with pytest.raises(GeometryError):
        ElementIndex.build(Mesh(nodes, [[0, 1, 2]]))


def test_threaded_chunks_match_sequential(cube):
    index = ElementIndex.build(cube)
    points = np.random.default_rng(2).uniform(-0.1, 1.1, size=(500, 3))

    sequential = locate_points(index, points, chunk_size=10_000, n_workers=1)
    threaded = locate_points(index, points, chunk_size=37, n_workers=4)
    np.testing.assert_array_equal(threaded.element, sequential.element)
    np.testing.assert_array_equal(threaded.weights, sequential.weights)


def test_oversize_elements_and_coarse_buckets(cube, monkeypatch):
    points = np.random.default_rng(3).uniform(-0.1, 1.1, size=(200, 3))
    reference = locate_points(ElementIndex.build(cube), points)

    monkeypatch.setattr(mesh_locator, "MAX_CELLS_PER_ELEMENT", 0)
    unbinned = ElementIndex.build(cube)
    assert unbinned.oversize.size == cube.n_elements
    np.testing.assert_array_equal(locate_points(unbinned, points).element >= 0, reference.located)

    monkeypatch.setattr(mesh_locator, "MAX_CELLS_PER_ELEMENT", 512)
    monkeypatch.setattr(mesh_locator, "MAX_BUCKET_CELLS", 8)
    coarse = ElementIndex.build(cube)
    assert np.prod(coarse.cell_shape) <= 8
    np.testing.assert_array_equal(locate_points(coarse, points).element >= 0, reference.located)


def test_locate_voxels_on_unit_tetrahedron(unit_tet, make_flags):
    flags = make_flags(voxmm=0.5, chunk_size=3)
    grid = build_voxel_grid(unit_tet.nodes, None, flags)
    location_map = locate_voxels(ElementIndex.build(unit_tet), grid, flags)

    assert location_map.n_points == grid.n_voxels
    assert location_map.n_located == 1
    assert location_map.element[grid.linear_index([0, 0, 0])] == 0
