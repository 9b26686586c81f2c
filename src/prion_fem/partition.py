"""
Domain partition: element ownership, DOF ownership and local numbering.

Every rank reads the same serial mesh and computes the same partition, so no
communication is needed here. For P1 elements there is one DOF per mesh
node.

Numbering:
    A DOF is owned by the lowest rank among the elements touching it. DOFs
    are renumbered so that rank p owns the contiguous global block
    [offsets[p], offsets[p+1]). Within a rank the local (arena) layout is
    owned DOFs first, then ghost DOFs in increasing global order.
"""

from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .mesh import TetMesh

if TYPE_CHECKING:
    from .parallel import ProcessGroup


class PartitionError(RuntimeError):
    """Raised for an inconsistent or impossible partition."""


def recursive_coordinate_bisection(
    points: NDArray[np.float64],
    n_parts: int,
) -> NDArray[np.int64]:
    """
    Split points into ``n_parts`` spatially compact groups.

    The point set is cut perpendicular to its longest bounding-box axis, with
    the two halves sized in proportion to the number of parts assigned to
    each, and the halves are split recursively.

    Args:
        points: Coordinates, shape (n, 3).
        n_parts: Number of parts.

    Returns:
        Part index of every point, shape (n,).
    """
    points = np.asarray(points, dtype=np.float64)
    n = len(points)
    if n_parts < 1:
        raise PartitionError(f"Number of parts must be positive, got {n_parts}")
    if n_parts > n:
        raise PartitionError(f"Cannot split {n} elements into {n_parts} parts")

    parts = np.zeros(n, dtype=np.int64)
    # Work list of (point indices, first part, number of parts)
    stack = [(np.arange(n), 0, n_parts)]
    while stack:
        idx, first, count = stack.pop()
        if count == 1:
            parts[idx] = first
            continue
        sub = points[idx]
        axis = int(np.argmax(sub.max(axis=0) - sub.min(axis=0)))
        order = idx[np.argsort(sub[:, axis], kind="stable")]

        left_parts = count // 2
        split = int(round(len(idx) * left_parts / count))
        split = min(max(split, left_parts), len(idx) - (count - left_parts))

        stack.append((order[:split], first, left_parts))
        stack.append((order[split:], first + left_parts, count - left_parts))

    return parts


class DomainPartition:
    """
    Owned and ghost DOFs of one rank.

    Attributes:
        rank: Rank this partition describes.
        n_parts: Number of ranks.
        element_owner: Owning rank of every mesh element, shape (n_elements,).
        offsets: Start of every rank's owned block, shape (n_parts + 1,).
        node_to_dof: Global DOF index of every mesh node.
        dof_to_node: Mesh node of every global DOF.
        local_elements: Mesh indices of the elements owned by this rank.
        ghost_dofs: Sorted global indices of this rank's ghost DOFs.
        relevant_dofs: Global index of every arena slot (owned, then ghosts).
        local_connectivity: Arena indices of the local elements' DOFs, shape
            (n_local_elements, 4).
    """

    def __init__(
        self,
        mesh: TetMesh,
        rank: int,
        n_parts: int,
        element_owner: Optional[NDArray[np.int64]] = None,
    ):
        """
        Build the partition of ``rank`` out of ``n_parts``.

        Args:
            mesh: Serial mesh, identical on every rank.
            rank: Rank to describe.
            n_parts: Number of ranks.
            element_owner: Owning rank of every element; computed by
                recursive coordinate bisection when None.
        """
        if not 0 <= rank < n_parts:
            raise PartitionError(f"Rank {rank} outside [0, {n_parts})")
        self.rank = rank
        self.n_parts = n_parts

        if element_owner is None:
            element_owner = recursive_coordinate_bisection(
                mesh.compute_element_centroids(), n_parts
            )
        element_owner = np.asarray(element_owner, dtype=np.int64)
        if element_owner.shape != (mesh.num_elements,):
            raise PartitionError(
                f"Element owner array has shape {element_owner.shape}, "
                f"expected ({mesh.num_elements},)"
            )
        if element_owner.size and (element_owner.min() < 0 or element_owner.max() >= n_parts):
            raise PartitionError("Element owner array references ranks outside the group")
        self.element_owner = element_owner

        self._number_dofs(mesh)
        self._build_local_layout(mesh)
        self.validate()

    @classmethod
    def for_group(
        cls,
        mesh: TetMesh,
        group: "ProcessGroup",
        element_owner: Optional[NDArray[np.int64]] = None,
    ) -> "DomainPartition":
        """Partition of the calling rank of ``group``."""
        return cls(mesh, group.rank, group.size, element_owner=element_owner)

    def _number_dofs(self, mesh: TetMesh) -> None:
        """Assign DOF owners and contiguous per-rank global numbering."""
        node_owner = np.full(mesh.num_nodes, self.n_parts, dtype=np.int64)
        np.minimum.at(
            node_owner,
            mesh.elements.ravel(),
            np.repeat(self.element_owner, mesh.elements.shape[1]),
        )
        orphans = np.flatnonzero(node_owner == self.n_parts)
        if len(orphans):
            raise PartitionError(
                f"{len(orphans)} node(s) belong to no element, first index {int(orphans[0])}"
            )

        self.dof_to_node = np.argsort(node_owner, kind="stable").astype(np.int64)
        self.node_to_dof = np.empty(mesh.num_nodes, dtype=np.int64)
        self.node_to_dof[self.dof_to_node] = np.arange(mesh.num_nodes)

        counts = np.bincount(node_owner, minlength=self.n_parts)
        self.offsets = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

    def _build_local_layout(self, mesh: TetMesh) -> None:
        self.local_elements = np.flatnonzero(self.element_owner == self.rank)
        global_conn = self.node_to_dof[mesh.elements[self.local_elements]]

        start, stop = self.owned_range
        touched = np.unique(global_conn)
        self.ghost_dofs = touched[(touched < start) | (touched >= stop)]
        self.relevant_dofs = np.concatenate(
            [np.arange(start, stop, dtype=np.int64), self.ghost_dofs]
        )
        self.local_connectivity = self.global_to_relevant_local(global_conn)

    # ---------------------------
    # Sizes and ranges
    # ---------------------------

    @property
    def n_global_dofs(self) -> int:
        return int(self.offsets[-1])

    @property
    def owned_range(self) -> Tuple[int, int]:
        """Global [start, stop) of the owned block."""
        return int(self.offsets[self.rank]), int(self.offsets[self.rank + 1])

    @property
    def n_owned(self) -> int:
        start, stop = self.owned_range
        return stop - start

    @property
    def n_ghosts(self) -> int:
        return len(self.ghost_dofs)

    @property
    def n_relevant(self) -> int:
        return self.n_owned + self.n_ghosts

    @property
    def owned_dofs(self) -> NDArray[np.int64]:
        return self.relevant_dofs[: self.n_owned]

    # ---------------------------
    # Index translation
    # ---------------------------

    def is_owned(self, dof):
        """True where global ``dof`` lies in this rank's owned block."""
        start, stop = self.owned_range
        dof = np.asarray(dof)
        result = (dof >= start) & (dof < stop)
        return bool(result) if result.ndim == 0 else result

    def is_ghost(self, dof):
        """True where global ``dof`` is one of this rank's ghosts."""
        dof = np.asarray(dof)
        if self.n_ghosts == 0:
            result = np.zeros(dof.shape, dtype=bool)
        else:
            pos = np.minimum(np.searchsorted(self.ghost_dofs, dof), self.n_ghosts - 1)
            result = self.ghost_dofs[pos] == dof
        return bool(result) if result.ndim == 0 else result

    def owner_of(self, dof):
        """Rank owning global ``dof``."""
        dof = np.asarray(dof)
        if np.any((dof < 0) | (dof >= self.n_global_dofs)):
            raise PartitionError("Global DOF index out of range")
        owner = np.searchsorted(self.offsets, dof, side="right") - 1
        return int(owner) if owner.ndim == 0 else owner

    def local_to_global(self, local):
        """Global index of arena slot(s) ``local``."""
        return self.relevant_dofs[local]

    def global_to_relevant_local(self, dof):
        """
        Arena slot of global ``dof`` (scalar or array).

        Raises:
            PartitionError: If a DOF is neither owned nor ghost on this rank.
        """
        dof = np.asarray(dof, dtype=np.int64)
        start, stop = self.owned_range
        owned = (dof >= start) & (dof < stop)

        pos = np.searchsorted(self.ghost_dofs, dof)
        safe = np.minimum(pos, max(self.n_ghosts - 1, 0))
        if self.n_ghosts:
            ghost = ~owned & (self.ghost_dofs[safe] == dof)
        else:
            ghost = np.zeros(dof.shape, dtype=bool)

        if not np.all(owned | ghost):
            missing = dof[~(owned | ghost)] if dof.ndim else dof
            raise PartitionError(
                f"DOF {int(np.ravel(missing)[0])} is neither owned nor ghost on rank {self.rank}"
            )

        local = np.where(owned, dof - start, self.n_owned + pos)
        return int(local) if local.ndim == 0 else local

    def element_dofs(self, local_element: int) -> NDArray[np.int64]:
        """Global DOF indices of the ``local_element``-th owned element."""
        return self.relevant_dofs[self.local_connectivity[local_element]]

    def validate(self) -> None:
        """
        Check that every DOF of every local element is owned or ghost.

        Raises:
            PartitionError: On inconsistency.
        """
        if self.local_connectivity.size == 0:
            return
        if self.local_connectivity.min() < 0 or self.local_connectivity.max() >= self.n_relevant:
            raise PartitionError(f"Local connectivity out of range on rank {self.rank}")
        if np.any(np.diff(self.ghost_dofs) <= 0):
            raise PartitionError(f"Ghost DOFs not strictly increasing on rank {self.rank}")
        if np.any(self.is_owned(self.ghost_dofs)):
            raise PartitionError(f"Ghost DOF also owned on rank {self.rank}")

    def __repr__(self) -> str:
        return (
            f"DomainPartition(rank={self.rank}/{self.n_parts}, "
            f"owned={self.n_owned}, ghosts={self.n_ghosts}, "
            f"elements={len(self.local_elements)})"
        )
