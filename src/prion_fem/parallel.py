"""
Process group abstraction for MPI-parallel runs.

Every component receives a ProcessGroup explicitly. The group wraps an
mpi4py communicator; a single-process run simply uses MPI.COMM_SELF, so the
whole solver chain is testable without an MPI launcher.

Methods marked "Collective" block until every member of the group has made
the matching call.
"""

from typing import Any, List, Optional

import numpy as np
from mpi4py import MPI


class ProcessGroup:
    """
    Lockstep group of worker processes.

    Attributes:
        mpi_comm: Underlying mpi4py communicator.
    """

    def __init__(self, comm: Optional[MPI.Comm] = None):
        """
        Initialize the process group.

        Args:
            comm: mpi4py communicator (default: MPI.COMM_WORLD).
        """
        self.mpi_comm = comm if comm is not None else MPI.COMM_WORLD

    @classmethod
    def world(cls) -> "ProcessGroup":
        """Group of all processes started by the launcher."""
        return cls(MPI.COMM_WORLD)

    @classmethod
    def serial(cls) -> "ProcessGroup":
        """Trivial one-process group."""
        return cls(MPI.COMM_SELF)

    @property
    def rank(self) -> int:
        """Rank of this process."""
        return self.mpi_comm.Get_rank()

    @property
    def size(self) -> int:
        """Number of processes in the group."""
        return self.mpi_comm.Get_size()

    @property
    def is_root(self) -> bool:
        """True on rank 0."""
        return self.rank == 0

    # ---------------------------
    # Collective operations
    # ---------------------------

    def barrier(self) -> None:
        """Collective: wait for all members."""
        self.mpi_comm.Barrier()

    def allreduce_sum(self, value: float) -> float:
        """Collective: global sum of a scalar."""
        return float(self.mpi_comm.allreduce(float(value), op=MPI.SUM))

    def allreduce_max(self, value: float) -> float:
        """Collective: global maximum of a scalar."""
        return float(self.mpi_comm.allreduce(float(value), op=MPI.MAX))

    def alltoall(self, outgoing: List[Any]) -> List[Any]:
        """
        Collective: personalized all-to-all exchange.

        Args:
            outgoing: One (picklable) payload per destination rank.

        Returns:
            One payload per source rank.
        """
        if len(outgoing) != self.size:
            raise ValueError(
                f"alltoall needs {self.size} payloads, got {len(outgoing)}"
            )
        return self.mpi_comm.alltoall(outgoing)

    def gather(self, payload: Any, root: int = 0) -> Optional[List[Any]]:
        """Collective: gather payloads on ``root`` (None elsewhere)."""
        return self.mpi_comm.gather(payload, root=root)

    def bcast(self, payload: Any, root: int = 0) -> Any:
        """Collective: broadcast a payload from ``root``."""
        return self.mpi_comm.bcast(payload, root=root)

    def gather_array(self, local: np.ndarray, root: int = 0) -> Optional[np.ndarray]:
        """
        Collective: concatenate per-rank arrays in rank order on ``root``.

        Returns:
            Concatenated array on root, None on the other ranks.
        """
        pieces = self.gather(np.ascontiguousarray(local), root=root)
        if pieces is None:
            return None
        return np.concatenate(pieces)

    def __repr__(self) -> str:
        return f"ProcessGroup(rank={self.rank}, size={self.size})"
