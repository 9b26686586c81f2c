"""
Distributed vectors and matrices over a DomainPartition.

A DistributedVector is an arena of ``n_owned + n_ghost`` values laid out as
the partition's local numbering. Ghost slots only become meaningful through
the collective operations:

- ``update_ghosts``: owners push their values into the ghost slots of
  every rank that reads them.
- ``compress_add``: contributions accumulated in ghost slots are sent to
  the owners and summed there; the ghost slots are reset to zero.

A DistributedMatrix accumulates element blocks as COO triplets and is turned
into a CSR block of owned rows by the collective ``compress``.

Methods documented as "Collective" block until every member of the process
group has made the matching call.
"""

from typing import TYPE_CHECKING, List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy import sparse

from .partition import DomainPartition

if TYPE_CHECKING:
    from .parallel import ProcessGroup


class GhostExchange:
    """
    Communication plan for the ghost DOFs of one rank.

    Attributes:
        partition: Local partition.
        group: Process group.
        send_slots: For every peer, the owned arena slots it reads.
        recv_slots: For every peer, the ghost arena slots it owns.
    """

    def __init__(self, partition: DomainPartition, group: "ProcessGroup"):
        """
        Build the plan. Collective.

        Args:
            partition: Partition of the calling rank.
            group: Process group the partition was built for.
        """
        if group.size != partition.n_parts or group.rank != partition.rank:
            raise ValueError(
                f"Partition for rank {partition.rank}/{partition.n_parts} "
                f"used on rank {group.rank}/{group.size}"
            )
        self.partition = partition
        self.group = group

        ghost_owner = (
            partition.owner_of(partition.ghost_dofs)
            if partition.n_ghosts
            else np.zeros(0, dtype=np.int64)
        )
        requests: List[NDArray[np.int64]] = []
        self.recv_slots: List[NDArray[np.int64]] = []
        for peer in range(group.size):
            mask = ghost_owner == peer
            requests.append(partition.ghost_dofs[mask])
            self.recv_slots.append(partition.n_owned + np.flatnonzero(mask))

        wanted = group.alltoall(requests)
        start, _ = partition.owned_range
        self.send_slots: List[NDArray[np.int64]] = [
            np.asarray(dofs, dtype=np.int64) - start for dofs in wanted
        ]
        for peer, slots in enumerate(self.send_slots):
            if slots.size and (slots.min() < 0 or slots.max() >= partition.n_owned):
                raise ValueError(f"Rank {peer} requested DOFs not owned by rank {group.rank}")

    def update_ghosts(self, values: NDArray[np.float64]) -> None:
        """Collective: overwrite ghost slots of ``values`` with the owners' values."""
        outgoing = [values[slots] for slots in self.send_slots]
        incoming = self.group.alltoall(outgoing)
        for slots, data in zip(self.recv_slots, incoming):
            values[slots] = data

    def compress_add(self, values: NDArray[np.float64]) -> None:
        """Collective: add ghost-slot contributions into the owners' entries."""
        outgoing = [values[slots] for slots in self.recv_slots]
        incoming = self.group.alltoall(outgoing)
        for slots, data in zip(self.send_slots, incoming):
            values[slots] += data
        values[self.partition.n_owned:] = 0.0


class DistributedVector:
    """
    Ghosted vector in the partition's arena layout.

    Attributes:
        exchange: Ghost exchange plan.
        data: Arena values, owned entries first then ghosts.
    """

    def __init__(self, exchange: GhostExchange, data: Optional[NDArray[np.float64]] = None):
        self.exchange = exchange
        n = exchange.partition.n_relevant
        if data is None:
            self.data = np.zeros(n)
        else:
            data = np.asarray(data, dtype=np.float64)
            if data.shape != (n,):
                raise ValueError(f"Vector data has shape {data.shape}, expected ({n},)")
            self.data = data.copy()

    @property
    def partition(self) -> DomainPartition:
        return self.exchange.partition

    @property
    def group(self) -> "ProcessGroup":
        return self.exchange.group

    @property
    def owned(self) -> NDArray[np.float64]:
        """View of the owned entries."""
        return self.data[: self.partition.n_owned]

    @property
    def ghosts(self) -> NDArray[np.float64]:
        """View of the ghost entries."""
        return self.data[self.partition.n_owned:]

    def zero(self) -> None:
        self.data[:] = 0.0

    def copy(self) -> "DistributedVector":
        return DistributedVector(self.exchange, self.data)

    def copy_from(self, other: "DistributedVector") -> None:
        """Copy all arena entries (owned and ghost) of ``other``."""
        self.data[:] = other.data

    def add_local(self, slots: NDArray[np.int64], values: NDArray[np.float64]) -> None:
        """Accumulate ``values`` at arena ``slots`` (repeated slots are summed)."""
        np.add.at(self.data, np.asarray(slots).ravel(), np.asarray(values).ravel())

    def assign_owned(self, values: NDArray[np.float64]) -> None:
        self.owned[:] = values

    def add_owned(self, values: NDArray[np.float64]) -> None:
        self.owned[:] += values

    def compress_add(self) -> None:
        """Collective: sum ghost contributions into their owners."""
        self.exchange.compress_add(self.data)

    def update_ghosts(self) -> None:
        """Collective: refresh ghost entries from their owners."""
        self.exchange.update_ghosts(self.data)

    def norm(self) -> float:
        """Collective: global l2 norm over owned entries."""
        local = float(np.dot(self.owned, self.owned))
        return float(np.sqrt(self.group.allreduce_sum(local)))

    def gather_global(self, root: int = 0) -> Optional[NDArray[np.float64]]:
        """
        Collective: the full vector in global DOF order on ``root``.

        Returns:
            Array of length n_global_dofs on root, None elsewhere.
        """
        return self.group.gather_array(self.owned, root=root)


class DistributedMatrix:
    """
    Sparse matrix with rows distributed like the partition's owned DOFs.

    Element contributions are added with global row and column indices; after
    ``compress`` the local block ``csr`` holds the owned rows against all
    global columns.
    """

    def __init__(self, exchange: GhostExchange):
        self.exchange = exchange
        self.csr: Optional[sparse.csr_matrix] = None
        self._rows: List[NDArray[np.int64]] = []
        self._cols: List[NDArray[np.int64]] = []
        self._vals: List[NDArray[np.float64]] = []

    @property
    def partition(self) -> DomainPartition:
        return self.exchange.partition

    @property
    def group(self) -> "ProcessGroup":
        return self.exchange.group

    @property
    def shape(self):
        """Global shape."""
        n = self.partition.n_global_dofs
        return (n, n)

    @property
    def is_compressed(self) -> bool:
        return self.csr is not None

    def zero(self) -> None:
        """Discard all entries."""
        self.csr = None
        self._rows, self._cols, self._vals = [], [], []

    def add_element_blocks(
        self,
        dofs: NDArray[np.int64],
        blocks: NDArray[np.float64],
    ) -> None:
        """
        Accumulate dense element blocks.

        Args:
            dofs: Global DOF indices per element, shape (n_e, k).
            blocks: Element matrices, shape (n_e, k, k).
        """
        if self.is_compressed:
            raise RuntimeError("Matrix already compressed; call zero() before adding")
        dofs = np.asarray(dofs, dtype=np.int64)
        k = dofs.shape[1]
        self._rows.append(np.repeat(dofs, k, axis=1).ravel())
        self._cols.append(np.tile(dofs, (1, k)).ravel())
        self._vals.append(np.asarray(blocks, dtype=np.float64).ravel())

    def compress(self) -> None:
        """
        Collective: ship rows owned elsewhere to their owners and build the
        local CSR block (duplicates summed).
        """
        if self.is_compressed:
            raise RuntimeError("Matrix already compressed")
        if self._rows:
            rows = np.concatenate(self._rows)
            cols = np.concatenate(self._cols)
            vals = np.concatenate(self._vals)
        else:
            rows = np.zeros(0, dtype=np.int64)
            cols = np.zeros(0, dtype=np.int64)
            vals = np.zeros(0)

        partition = self.partition
        owner = partition.owner_of(rows) if rows.size else np.zeros(0, dtype=np.int64)
        outgoing = []
        for peer in range(self.group.size):
            mask = (owner == peer) & (peer != partition.rank)
            outgoing.append((rows[mask], cols[mask], vals[mask]))
        incoming = self.group.alltoall(outgoing)

        keep = owner == partition.rank
        all_rows = [rows[keep]] + [r for r, _, _ in incoming]
        all_cols = [cols[keep]] + [c for _, c, _ in incoming]
        all_vals = [vals[keep]] + [v for _, _, v in incoming]

        start, _ = partition.owned_range
        csr = sparse.coo_matrix(
            (np.concatenate(all_vals), (np.concatenate(all_rows) - start, np.concatenate(all_cols))),
            shape=(partition.n_owned, partition.n_global_dofs),
        ).tocsr()
        csr.sum_duplicates()
        csr.sort_indices()
        self.csr = csr
        self._rows, self._cols, self._vals = [], [], []

    def zero_rows_columns(self, dofs: NDArray[np.int64]) -> None:
        """
        Replace the rows and columns of global ``dofs`` by the identity.

        ``dofs`` must be the same on every rank. Requires a compressed matrix.
        """
        if not self.is_compressed:
            raise RuntimeError("Matrix must be compressed first")
        partition = self.partition
        start, stop = partition.owned_range
        constrained = np.zeros(partition.n_global_dofs, dtype=bool)
        constrained[np.asarray(dofs, dtype=np.int64)] = True

        coo = self.csr.tocoo()
        keep = ~(constrained[coo.row + start] | constrained[coo.col])
        diag = np.flatnonzero(constrained[start:stop])

        csr = sparse.coo_matrix(
            (
                np.concatenate([coo.data[keep], np.ones(len(diag))]),
                (
                    np.concatenate([coo.row[keep], diag]),
                    np.concatenate([coo.col[keep], diag + start]),
                ),
            ),
            shape=self.csr.shape,
        ).tocsr()
        csr.sort_indices()
        self.csr = csr

    def diagonal_block(self) -> sparse.csr_matrix:
        """Owned rows by owned columns."""
        if not self.is_compressed:
            raise RuntimeError("Matrix must be compressed first")
        start, stop = self.partition.owned_range
        return self.csr[:, start:stop].tocsr()

    def matvec(self, x: "DistributedVector") -> NDArray[np.float64]:
        """
        Collective: owned entries of the product with ``x``.

        Owned rows may couple to DOFs outside the local relevant set, so the
        full vector is assembled on every rank. Meant for diagnostics and
        tests, not for use inside iterative solvers.
        """
        if not self.is_compressed:
            raise RuntimeError("Matrix must be compressed first")
        x_global = self.group.bcast(x.gather_global(root=0), root=0)
        return self.csr @ x_global
