#!/usr/bin/env python3
"""
Point location in a simplex mesh.

For every query point this module finds the containing element and the
barycentric weights of the point with respect to that element's nodes. The
search runs through an explicit spatial index so it scales to meshes with
hundreds of thousands of elements:

• Each usable element stores the inverse of its edge matrix, so the weights of
  a point are one small matrix-vector product
• Element bounding boxes are binned into a uniform bucket grid, held as a
  scipy.sparse CSR incidence (cell -> elements)
• A query point only tests the elements of the one cell it falls in, plus the
  few oversize elements that span too many cells to be binned

Triangle meshes are handled when they are flat along a coordinate axis: the
location then happens in the two in-plane coordinates, and query points off
the plane are reported as unlocated.

Points outside the mesh are never an error. They come back with element -1.
"""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import scipy.sparse as sp

from gtoa.light_modeling.gtoa_config import DEFAULT_CHUNK_SIZE, DEFAULT_LOC_TOL, DEFAULT_N_WORKERS
from gtoa.utils.exceptions import DimensionMismatchError, GeometryError
from gtoa.utils.logging_config import get_light_logger

# Spatial index tuning
DEGENERATE_DET_TOL = 1e-12              # |det| below this (relative to scale**k) marks an element unusable
BUCKET_SIZE_QUANTILE = 0.9              # Cell edge = this quantile of element extents
MAX_BUCKET_CELLS = 1 << 22              # Upper bound on bucket grid cells
MAX_CELLS_PER_ELEMENT = 512             # Elements spanning more cells are tested against every query
PLANAR_TOL = 1e-9                       # Relative flatness tolerance for triangle meshes

logger = get_light_logger(__name__)


class LocationMap:
    """
    Containing element and barycentric weights for a set of query points.

    Attributes:
        element (np.ndarray): Zero-based element id per point, -1 when unlocated, shape (V,)
        weights (np.ndarray): Barycentric weights over the element's nodes, shape (V, k+1);
            rows of unlocated points are zero
        connectivity (np.ndarray): Mesh element table the ids refer to, shape (E, k+1)
    """

    def __init__(self, element, weights, connectivity):
        self.element = np.asarray(element, dtype=np.int64)
        self.weights = np.asarray(weights, dtype=np.float64)
        self.connectivity = np.asarray(connectivity, dtype=np.int64)
        if self.weights.shape != (self.element.shape[0], self.connectivity.shape[1]):
            raise DimensionMismatchError(
                f"weights shape {self.weights.shape} does not match {self.element.shape[0]} points "
                f"x {self.connectivity.shape[1]} nodes per element", stage="MeshLocator")
        self._matrix_cache = {}

    @property
    def n_points(self):
        return self.element.shape[0]

    @property
    def located(self):
        """Boolean mask of points that fell inside the mesh."""
        return self.element >= 0

    @property
    def n_located(self):
        return int(np.count_nonzero(self.located))

    def interpolation_matrix(self, n_nodes):
        """
        Sparse (V x n_nodes) matrix that maps node values to point values.

        Row v holds the barycentric weights of point v at the nodes of its
        element; rows of unlocated points are empty. Built once per node count
        and cached, so voxelizing several fields costs one sparse product each.
        """
        n_nodes = int(n_nodes)
        if n_nodes not in self._matrix_cache:
            located = np.flatnonzero(self.located)
            if located.size and self.connectivity.max() >= n_nodes:
                raise DimensionMismatchError(
                    f"element connectivity references node {self.connectivity.max()} "
                    f"but only {n_nodes} nodes were given", stage="MeshToVoxelInterpolator")
            npe = self.connectivity.shape[1]
            rows = np.repeat(located, npe)
            cols = self.connectivity[self.element[located]].ravel()
            data = self.weights[located].ravel()
            self._matrix_cache[n_nodes] = sp.csr_matrix(
                (data, (rows, cols)), shape=(self.n_points, n_nodes))
        return self._matrix_cache[n_nodes]

    def __repr__(self):
        return f"LocationMap(n_points={self.n_points}, n_located={self.n_located})"


class ElementIndex:
    """
    Bucket-grid spatial index over the usable elements of a mesh.

    Build with `ElementIndex.build(mesh)`; the index is read-only afterwards
    and may be shared by several query threads.
    """

    def __init__(self, connectivity, element_ids, v0, edge_inverse, axes, plane_axis, plane_value,
                 scale, lower, upper, cell_size, cell_shape, incidence, oversize):
        self.connectivity = connectivity
        self.element_ids = element_ids
        self.v0 = v0
        self.edge_inverse = edge_inverse
        self.axes = axes
        self.plane_axis = plane_axis
        self.plane_value = plane_value
        self.scale = scale
        self.lower = lower
        self.upper = upper
        self.cell_size = cell_size
        self.cell_shape = cell_shape
        self.incidence = incidence
        self.oversize = oversize

    @property
    def nodes_per_element(self):
        return self.connectivity.shape[1]

    @property
    def n_usable(self):
        return self.element_ids.shape[0]

    @property
    def is_planar(self):
        return self.plane_axis is not None

    @classmethod
    def build(cls, mesh):
        """
        Precompute inverse element maps and bin the elements into buckets.

        Args:
            mesh (Mesh): Tetrahedral mesh, or triangle mesh flat along one axis

        Returns:
            ElementIndex
        """
        nodes = mesh.nodes
        elements = mesh.elements
        npe = mesh.nodes_per_element
        k = npe - 1

        plane_axis = None
        plane_value = None
        axes = np.arange(3)
        if npe == 3:
            lo, hi = nodes.min(axis=0), nodes.max(axis=0)
            extent = hi - lo
            flat = extent <= PLANAR_TOL * max(float(extent.max()), 1.0)
            if not flat.any():
                raise GeometryError(
                    "triangle meshes must be flat along one coordinate axis", stage="MeshLocator")
            plane_axis = int(np.argmin(extent))
            plane_value = 0.5 * (lo[plane_axis] + hi[plane_axis])
            axes = np.array([a for a in range(3) if a != plane_axis])
            logger.info(f"Planar triangle mesh at {'xyz'[plane_axis]} = {plane_value:g}")

        coords = nodes[:, axes]
        scale = float((coords.max(axis=0) - coords.min(axis=0)).max())

        vertices = coords[elements]                                         # (E, k+1, k)
        edge_matrix = (vertices[:, 1:, :] - vertices[:, :1, :]).transpose(0, 2, 1)  # columns are edges
        det = np.linalg.det(edge_matrix)
        usable = np.isfinite(det) & (np.abs(det) > DEGENERATE_DET_TOL * scale ** k)

        n_degenerate = int(elements.shape[0] - np.count_nonzero(usable))
        if n_degenerate:
            logger.warning(f"Skipping {n_degenerate:,} degenerate element(s) of {elements.shape[0]:,}")
        if not usable.any():
            raise GeometryError("mesh has no usable (non-degenerate) elements", stage="MeshLocator")

        element_ids = np.flatnonzero(usable)
        vertices = vertices[usable]
        edge_inverse = np.linalg.inv(edge_matrix[usable])
        v0 = np.ascontiguousarray(vertices[:, 0, :])

        elem_lo = vertices.min(axis=1)
        elem_hi = vertices.max(axis=1)
        lower = elem_lo.min(axis=0)
        upper = elem_hi.max(axis=0)

        cell_size, cell_shape = _bucket_geometry(lower, upper, (elem_hi - elem_lo).max(axis=1))
        incidence, oversize = _bin_elements(elem_lo, elem_hi, lower, cell_size, cell_shape)

        logger.debug(f"Bucket grid {tuple(int(n) for n in cell_shape)} cells of {cell_size:.4g} mm, "
                     f"{incidence.nnz:,} entries, {oversize.size} oversize element(s)")

        return cls(elements, element_ids, v0, edge_inverse, axes, plane_axis, plane_value,
                   scale, lower, upper, cell_size, cell_shape, incidence, oversize)

    def query(self, points, loc_tol=DEFAULT_LOC_TOL):
        """
        Locate a block of points.

        Args:
            points (np.ndarray): World coordinates, shape (P, 3)
            loc_tol (float): Smallest accepted barycentric weight is -loc_tol

        Returns:
            tuple: (element (P,) int64 with -1 = unlocated, weights (P, k+1))
        """
        points = np.asarray(points, dtype=np.float64)
        n_points = points.shape[0]
        npe = self.nodes_per_element
        element = np.full(n_points, -1, dtype=np.int64)
        weights = np.zeros((n_points, npe))
        if n_points == 0:
            return element, weights

        slack = loc_tol * max(self.scale, 1.0)
        candidate = np.ones(n_points, dtype=bool)
        if self.is_planar:
            off_plane = np.abs(points[:, self.plane_axis] - self.plane_value)
            candidate &= off_plane <= max(loc_tol, PLANAR_TOL) * max(self.scale, 1.0)
        q = points[:, self.axes]
        candidate &= np.all((q >= self.lower - slack) & (q <= self.upper + slack), axis=1)

        point_pos = np.flatnonzero(candidate)
        if point_pos.size == 0:
            return element, weights

        cells = np.floor((q[point_pos] - self.lower) / self.cell_size).astype(np.int64)
        cells = np.clip(cells, 0, self.cell_shape - 1)
        cell_lin = np.ravel_multi_index(tuple(cells.T), tuple(self.cell_shape))

        indptr = self.incidence.indptr
        starts = indptr[cell_lin]
        counts = indptr[cell_lin + 1] - starts
        pair_point = np.repeat(point_pos, counts)
        offsets = np.arange(pair_point.size) - np.repeat(np.cumsum(counts) - counts, counts)
        pair_elem = self.incidence.indices[np.repeat(starts, counts) + offsets]

        if self.oversize.size:
            pair_point = np.concatenate([pair_point, np.repeat(point_pos, self.oversize.size)])
            pair_elem = np.concatenate([pair_elem, np.tile(self.oversize, point_pos.size)])

        if pair_point.size == 0:
            return element, weights

        lam = np.einsum('nij,nj->ni', self.edge_inverse[pair_elem], q[pair_point] - self.v0[pair_elem])
        w = np.concatenate([1.0 - lam.sum(axis=1, keepdims=True), lam], axis=1)
        min_w = w.min(axis=1)

        accept = np.flatnonzero(min_w >= -loc_tol)
        if accept.size == 0:
            return element, weights

        # Per point keep the element with the largest minimum weight, then lowest id
        order = accept[np.lexsort((pair_elem[accept], -min_w[accept], pair_point[accept]))]
        first = np.ones(order.size, dtype=bool)
        first[1:] = pair_point[order[1:]] != pair_point[order[:-1]]
        best = order[first]

        element[pair_point[best]] = self.element_ids[pair_elem[best]]
        weights[pair_point[best]] = w[best]
        return element, weights

    def __repr__(self):
        return (f"ElementIndex(n_usable={self.n_usable}, nodes_per_element={self.nodes_per_element}, "
                f"cells={tuple(int(n) for n in self.cell_shape)})")


def _bucket_geometry(lower, upper, element_extent):
    """Pick a cell edge and cell counts for the bucket grid."""
    span = upper - lower
    cell_size = float(np.quantile(element_extent, BUCKET_SIZE_QUANTILE))
    if not cell_size > 0:
        cell_size = float(span.max()) if span.max() > 0 else 1.0

    cell_shape = np.maximum(1, np.ceil(span / cell_size)).astype(np.int64)
    while np.prod(cell_shape.astype(np.float64)) > MAX_BUCKET_CELLS:
        cell_size *= 2.0
        cell_shape = np.maximum(1, np.ceil(span / cell_size)).astype(np.int64)
    return cell_size, cell_shape


def _bin_elements(elem_lo, elem_hi, lower, cell_size, cell_shape):
    """
    Cell -> element incidence for every element whose bounding box spans few cells.

    Returns:
        tuple: (CSR incidence of shape (n_cells, n_elements), oversize element positions)
    """
    n_elem = elem_lo.shape[0]
    c_lo = np.clip(np.floor((elem_lo - lower) / cell_size).astype(np.int64), 0, cell_shape - 1)
    c_hi = np.clip(np.floor((elem_hi - lower) / cell_size).astype(np.int64), 0, cell_shape - 1)
    span = c_hi - c_lo + 1
    n_span = np.prod(span, axis=1)

    oversize = np.flatnonzero(n_span > MAX_CELLS_PER_ELEMENT)
    binned = np.flatnonzero(n_span <= MAX_CELLS_PER_ELEMENT)

    # Expand each binned element into every cell of its span
    counts = n_span[binned]
    owner = np.repeat(binned, counts)
    rank = np.arange(owner.size) - np.repeat(np.cumsum(counts) - counts, counts)
    cells = np.empty((owner.size, span.shape[1]), dtype=np.int64)
    for axis in range(span.shape[1] - 1, -1, -1):
        width = span[owner, axis]
        cells[:, axis] = c_lo[owner, axis] + rank % width
        rank //= width

    n_cells = int(np.prod(cell_shape))
    cell_lin = np.ravel_multi_index(tuple(cells.T), tuple(cell_shape))
    incidence = sp.coo_matrix(
        (np.ones(owner.size, dtype=np.int8), (cell_lin, owner)), shape=(n_cells, n_elem)).tocsr()
    return incidence, oversize


def _locate_chunks(index, n_points, get_chunk, chunk_size, n_workers, loc_tol):
    element = np.full(n_points, -1, dtype=np.int64)
    weights = np.zeros((n_points, index.nodes_per_element))

    def work(start):
        stop = min(start + chunk_size, n_points)
        element[start:stop], weights[start:stop] = index.query(get_chunk(start, stop), loc_tol)

    starts = range(0, n_points, chunk_size)
    if n_workers > 1 and len(starts) > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            list(pool.map(work, starts))
    else:
        for start in starts:
            work(start)

    return LocationMap(element, weights, index.connectivity)


def locate_points(index, points, chunk_size=DEFAULT_CHUNK_SIZE, n_workers=DEFAULT_N_WORKERS,
                  loc_tol=DEFAULT_LOC_TOL):
    """
    Locate arbitrary points in the indexed mesh.

    Args:
        index (ElementIndex): Spatial index from `ElementIndex.build`
        points (np.ndarray): World coordinates, shape (P, 3)
        chunk_size (int): Points per query block
        n_workers (int): Threads running blocks concurrently
        loc_tol (float): Barycentric acceptance tolerance

    Returns:
        LocationMap
    """
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise DimensionMismatchError(f"query points must have shape (P, 3), got {points.shape}",
                                     stage="MeshLocator")
    return _locate_chunks(index, points.shape[0], lambda start, stop: points[start:stop],
                          chunk_size, n_workers, loc_tol)


def locate_voxels(index, grid, flags):
    """
    Locate every voxel center of `grid`, generating centers chunk by chunk.

    Returns:
        LocationMap: one row per voxel, in linear (C-order) voxel index order
    """
    logger.info(f"> Locating {grid.n_voxels:,} voxel centers in {index.n_usable:,} elements")
    location_map = _locate_chunks(index, grid.n_voxels, grid.flat_centers,
                                  int(flags.chunk_size), int(flags.n_workers), float(flags.loc_tol))
    logger.info(f"  {location_map.n_located:,}/{grid.n_voxels:,} voxels inside the mesh")
    return location_map
