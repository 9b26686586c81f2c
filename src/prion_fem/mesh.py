"""
Tetrahedral mesh module.

Provides the serial mesh every rank reads at setup: a TetMesh data structure,
a generator for structured box and voxel-mask meshes, and meshio-based file
input/output (Gmsh ``.msh`` for anatomical meshes, ``.vtu`` and friends).
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
import meshio


class MeshError(ValueError):
    """Raised for malformed meshes (no tetrahedra, degenerate elements)."""


# Local faces of a tetrahedron (opposite to vertex 3, 2, 1, 0)
TET_FACES = np.array([
    [0, 1, 2],
    [0, 1, 3],
    [0, 2, 3],
    [1, 2, 3],
], dtype=np.int64)


@dataclass
class TetMesh:
    """
    Tetrahedral mesh data structure for FEM.

    Attributes:
        nodes: Node coordinates, shape (N, 3).
        elements: Element connectivity, shape (M, 4).
        node_labels: Optional integer label at each node.
        boundary_nodes: Sorted indices of nodes on the boundary.
    """

    nodes: NDArray[np.float64]
    elements: NDArray[np.int64]
    node_labels: NDArray[np.int32] = field(default_factory=lambda: np.array([], dtype=np.int32))
    boundary_nodes: NDArray[np.int64] = field(default_factory=lambda: np.array([], dtype=np.int64))

    def __post_init__(self):
        self.nodes = np.ascontiguousarray(self.nodes, dtype=np.float64)
        self.elements = np.ascontiguousarray(self.elements, dtype=np.int64)
        if self.nodes.ndim != 2 or self.nodes.shape[1] != 3:
            raise MeshError(f"Nodes must have shape (N, 3), got {self.nodes.shape}")
        if self.elements.ndim != 2 or self.elements.shape[1] != 4:
            raise MeshError(
                f"Elements must have shape (M, 4), got {self.elements.shape}"
            )
        if self.elements.size and (
            self.elements.min() < 0 or self.elements.max() >= self.num_nodes
        ):
            raise MeshError("Element connectivity references non-existent nodes")

    @property
    def num_nodes(self) -> int:
        """Number of nodes in the mesh."""
        return len(self.nodes)

    @property
    def num_elements(self) -> int:
        """Number of elements in the mesh."""
        return len(self.elements)

    def compute_element_volumes(self) -> NDArray[np.float64]:
        """
        Compute volume of each tetrahedral element.

        Returns:
            Array of element volumes.
        """
        coords = self.nodes[self.elements]  # (M, 4, 3)
        # Volume = |det([v1-v0, v2-v0, v3-v0])| / 6
        edges = coords[:, 1:, :] - coords[:, :1, :]
        return np.abs(np.linalg.det(edges)) / 6.0

    def compute_element_centroids(self) -> NDArray[np.float64]:
        """
        Compute centroid of each element.

        Returns:
            Array of centroids, shape (M, 3).
        """
        return self.nodes[self.elements].mean(axis=1)

    def get_element_nodes(self, element_idx: int) -> NDArray[np.float64]:
        """Get node coordinates for a specific element."""
        return self.nodes[self.elements[element_idx]]

    def compute_quality_metrics(self) -> Dict[str, float]:
        """
        Compute mesh quality metrics.

        Returns:
            Dictionary with quality statistics.
        """
        volumes = self.compute_element_volumes()

        # Aspect ratio: longest over shortest edge
        coords = self.nodes[self.elements]
        pairs = [(i, j) for i in range(4) for j in range(i + 1, 4)]
        edge_lengths = np.stack(
            [np.linalg.norm(coords[:, i] - coords[:, j], axis=1) for i, j in pairs],
            axis=1,
        )
        aspect_ratios = edge_lengths.max(axis=1) / edge_lengths.min(axis=1)

        return {
            "num_nodes": self.num_nodes,
            "num_elements": self.num_elements,
            "total_volume": float(np.sum(volumes)),
            "min_volume": float(np.min(volumes)),
            "max_volume": float(np.max(volumes)),
            "mean_volume": float(np.mean(volumes)),
            "min_aspect_ratio": float(np.min(aspect_ratios)),
            "max_aspect_ratio": float(np.max(aspect_ratios)),
            "mean_aspect_ratio": float(np.mean(aspect_ratios)),
        }

    def find_nearest_node(self, point: NDArray[np.float64]) -> int:
        """Find the node nearest to a given point."""
        distances = np.linalg.norm(self.nodes - np.asarray(point), axis=1)
        return int(np.argmin(distances))

    def find_boundary_nodes(self) -> NDArray[np.int64]:
        """
        Detect boundary nodes from faces that belong to exactly one element.

        Returns:
            Sorted node indices on the boundary.
        """
        if self.num_elements == 0:
            return np.array([], dtype=np.int64)
        faces = self.elements[:, TET_FACES].reshape(-1, 3)
        faces = np.sort(faces, axis=1)
        unique_faces, counts = np.unique(faces, axis=0, return_counts=True)
        return np.unique(unique_faces[counts == 1]).astype(np.int64)

    def compact(self) -> "TetMesh":
        """
        Drop nodes that no element references and renumber the rest.

        Returns:
            New TetMesh (or self if every node is used).
        """
        used = np.unique(self.elements)
        if len(used) == self.num_nodes:
            return self

        new_index = np.full(self.num_nodes, -1, dtype=np.int64)
        new_index[used] = np.arange(len(used))

        labels = self.node_labels[used] if len(self.node_labels) else self.node_labels
        boundary = new_index[self.boundary_nodes] if len(self.boundary_nodes) else self.boundary_nodes
        boundary = boundary[boundary >= 0]

        return TetMesh(
            nodes=self.nodes[used],
            elements=new_index[self.elements],
            node_labels=labels,
            boundary_nodes=np.sort(boundary),
        )

    def check_degenerate(self, rtol: float = 1e-12) -> None:
        """
        Raise MeshError if any element has (near-)zero volume.

        Args:
            rtol: Volume threshold relative to the mean element volume.
        """
        if self.num_elements == 0:
            raise MeshError("Mesh has no tetrahedral elements")
        volumes = self.compute_element_volumes()
        threshold = rtol * max(float(volumes.mean()), np.finfo(float).tiny)
        bad = np.flatnonzero(volumes <= threshold)
        if len(bad):
            raise MeshError(
                f"{len(bad)} degenerate element(s), first index {int(bad[0])}"
            )


# Corner offsets of a hexahedral cell: index = x + 2*y + 4*z
HEX_CORNERS = np.array([
    [0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0],
    [0, 0, 1], [1, 0, 1], [0, 1, 1], [1, 1, 1],
], dtype=np.int64)

# Six-tetrahedra split; every cell uses the same face diagonals, so
# neighbouring cells share conforming faces.
SIX_TET_PATTERN = np.array([
    [0, 1, 2, 4],
    [1, 2, 4, 5],
    [2, 4, 5, 6],
    [1, 2, 3, 5],
    [2, 3, 5, 6],
    [3, 5, 6, 7],
], dtype=np.int64)


class MeshGenerator:
    """
    Generator for structured tetrahedral meshes.

    Each hexahedral cell (box subdivision or mask voxel) is split into six
    tetrahedra.
    """

    def box(
        self,
        n: int,
        lower: Sequence[float] = (0.0, 0.0, 0.0),
        upper: Sequence[float] = (1.0, 1.0, 1.0),
    ) -> TetMesh:
        """
        Subdivided hyper-rectangle.

        Args:
            n: Number of cells per axis.
            lower: Lower corner.
            upper: Upper corner.

        Returns:
            TetMesh with (n + 1)^3 nodes and 6 n^3 elements.
        """
        if n < 1:
            raise MeshError(f"Box mesh needs at least one cell per axis, got {n}")
        lower = np.asarray(lower, dtype=np.float64)
        upper = np.asarray(upper, dtype=np.float64)
        if np.any(upper <= lower):
            raise MeshError("Box upper corner must exceed lower corner")

        mask = np.ones((n, n, n), dtype=bool)
        return self.from_mask(mask, voxel_size=tuple((upper - lower) / n), origin=lower)

    def from_mask(
        self,
        mask: NDArray[np.bool_],
        voxel_size: Tuple[float, float, float] = (1.0, 1.0, 1.0),
        origin: Optional[Sequence[float]] = None,
        labels: Optional[NDArray[np.int32]] = None,
    ) -> TetMesh:
        """
        Generate a tetrahedral mesh from a binary voxel mask.

        Args:
            mask: Binary mask defining the region to mesh.
            voxel_size: Physical size of each voxel.
            origin: Physical position of the first voxel corner.
            labels: Optional label volume; nodes take the label of the
                nearest voxel.

        Returns:
            TetMesh object.
        """
        mask = np.asarray(mask, dtype=bool)
        voxel_coords = np.argwhere(mask)
        if len(voxel_coords) == 0:
            raise MeshError("Mask selects no voxels")

        # Unique corner lattice points, numbered in lexicographic order
        corners = (voxel_coords[:, None, :] + HEX_CORNERS[None, :, :]).reshape(-1, 3)
        lattice, inverse = np.unique(corners, axis=0, return_inverse=True)
        corner_nodes = inverse.reshape(-1, 8)

        elements = corner_nodes[:, SIX_TET_PATTERN].reshape(-1, 4)

        nodes = lattice.astype(np.float64) * np.asarray(voxel_size, dtype=np.float64)
        if origin is not None:
            nodes = nodes + np.asarray(origin, dtype=np.float64)

        node_labels = np.ones(len(nodes), dtype=np.int32)
        if labels is not None:
            idx = np.clip(lattice, 0, np.array(labels.shape) - 1)
            node_labels = labels[idx[:, 0], idx[:, 1], idx[:, 2]].astype(np.int32)

        mesh = TetMesh(nodes=nodes, elements=elements, node_labels=node_labels)
        mesh.boundary_nodes = mesh.find_boundary_nodes()
        return mesh


def save_mesh(mesh: TetMesh, filename: str) -> None:
    """
    Save mesh to file using meshio.

    Args:
        mesh: Mesh to save.
        filename: Output filename (supports .vtk, .vtu, .msh, etc.).
    """
    point_data = {}
    if len(mesh.node_labels) > 0:
        point_data["labels"] = mesh.node_labels

    meshio_mesh = meshio.Mesh(
        points=mesh.nodes,
        cells=[("tetra", mesh.elements)],
        point_data=point_data or None,
    )
    meshio_mesh.write(filename)


def load_mesh(filename: str) -> TetMesh:
    """
    Load a tetrahedral mesh from file using meshio.

    Non-tetrahedral cell blocks (boundary triangles, lines) are ignored,
    unreferenced nodes are dropped and boundary nodes are detected from faces.

    Args:
        filename: Input filename.

    Returns:
        Loaded TetMesh.
    """
    meshio_mesh = meshio.read(filename)

    blocks = [
        block.data for block in meshio_mesh.cells if block.type == "tetra"
    ]
    if not blocks:
        raise MeshError(f"No tetrahedral elements found in {filename}")
    elements = np.concatenate(blocks).astype(np.int64)

    node_labels = np.array([], dtype=np.int32)
    if meshio_mesh.point_data and "labels" in meshio_mesh.point_data:
        node_labels = np.asarray(meshio_mesh.point_data["labels"]).astype(np.int32)

    points = np.asarray(meshio_mesh.points, dtype=np.float64)
    if points.shape[1] == 2:
        raise MeshError(f"{filename} is a 2-D mesh; a 3-D tetrahedral mesh is required")

    mesh = TetMesh(nodes=points, elements=elements, node_labels=node_labels).compact()
    mesh.boundary_nodes = mesh.find_boundary_nodes()
    return mesh
