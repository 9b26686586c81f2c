"""
Pytest configuration and shared fixtures for prion_fem tests.

All tests run in one process. Multi-rank behavior is exercised with
ThreadGroup, an in-process stand-in for ProcessGroup where every rank is a
thread and collectives meet at a barrier.
"""

import threading
from types import SimpleNamespace

import pytest
import numpy as np

# Add src to path for imports
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class _Rendezvous:
    def __init__(self, size: int, timeout: float = 60.0):
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots = [None] * size


class ThreadGroup:
    """ProcessGroup look-alike for ranks running as threads of one process."""

    def __init__(self, rendezvous: _Rendezvous, rank: int):
        self._rv = rendezvous
        self.rank = rank
        self.size = rendezvous.size

    @property
    def is_root(self):
        return self.rank == 0

    def _allgather(self, payload):
        self._rv.slots[self.rank] = payload
        self._rv.barrier.wait()
        gathered = list(self._rv.slots)
        self._rv.barrier.wait()
        return gathered

    def barrier(self):
        self._rv.barrier.wait()

    def allreduce_sum(self, value):
        return float(sum(self._allgather(float(value))))

    def allreduce_max(self, value):
        return float(max(self._allgather(float(value))))

    def alltoall(self, outgoing):
        assert len(outgoing) == self.size
        gathered = self._allgather(list(outgoing))
        return [gathered[src][self.rank] for src in range(self.size)]

    def gather(self, payload, root=0):
        gathered = self._allgather(payload)
        return gathered if self.rank == root else None

    def bcast(self, payload, root=0):
        return self._allgather(payload)[root]

    def gather_array(self, local, root=0):
        pieces = self.gather(np.ascontiguousarray(local), root=root)
        if pieces is None:
            return None
        return np.concatenate(pieces)


class NonRootView:
    """A group as seen from a non-root rank: collectives delegate, is_root is False."""

    is_root = False

    def __init__(self, group):
        self._group = group

    def __getattr__(self, name):
        return getattr(self._group, name)


def _run_ranks(n_ranks, func):
    """
    Run ``func(group)`` on ``n_ranks`` threads and return the per-rank results.
    """
    rendezvous = _Rendezvous(n_ranks)
    results = [None] * n_ranks
    errors = [None] * n_ranks

    def target(rank):
        try:
            results[rank] = func(ThreadGroup(rendezvous, rank))
        except BaseException as exc:
            errors[rank] = exc
            rendezvous.barrier.abort()

    threads = [threading.Thread(target=target, args=(r,)) for r in range(n_ranks)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for exc in errors:
        if exc is not None and not isinstance(exc, threading.BrokenBarrierError):
            raise exc
    for exc in errors:
        if exc is not None:
            raise exc
    return results


@pytest.fixture
def run_ranks():
    """Run a function on several in-process ranks."""
    return _run_ranks


@pytest.fixture
def serial_group():
    """One-process group on MPI.COMM_SELF."""
    from prion_fem.parallel import ProcessGroup

    return ProcessGroup.serial()


@pytest.fixture
def non_root_group(serial_group):
    """The serial group presented as a non-root rank."""
    return NonRootView(serial_group)


@pytest.fixture
def unit_tetrahedron():
    """Single unit tetrahedron mesh."""
    from prion_fem.mesh import TetMesh

    nodes = np.array([
        [0.0, 0.0, 0.0],
        [1.0, 0.0, 0.0],
        [0.0, 1.0, 0.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)
    elements = np.array([[0, 1, 2, 3]], dtype=np.int64)

    return TetMesh(nodes=nodes, elements=elements)


@pytest.fixture
def box_mesh():
    """Unit cube with 3 cells per axis (64 nodes, 162 tetrahedra)."""
    from prion_fem.mesh import MeshGenerator

    return MeshGenerator().box(3)


@pytest.fixture
def small_box_mesh():
    """Unit cube with 2 cells per axis (27 nodes, 48 tetrahedra)."""
    from prion_fem.mesh import MeshGenerator

    return MeshGenerator().box(2)


def _make_system(
    mesh,
    group,
    reaction_rate=2.0,
    diffusivity=None,
    dt=0.1,
    constrained_dofs=None,
):
    """Partition, exchange, assembler and containers for one rank."""
    from prion_fem.assembly import WeakFormAssembler
    from prion_fem.coefficients import constant
    from prion_fem.distributed import DistributedMatrix, DistributedVector, GhostExchange
    from prion_fem.partition import DomainPartition

    if diffusivity is None:
        diffusivity = np.eye(3)
    partition = DomainPartition.for_group(mesh, group)
    exchange = GhostExchange(partition, group)
    assembler = WeakFormAssembler(
        mesh,
        partition,
        reaction_rate=constant(reaction_rate),
        diffusivity=diffusivity,
        dt=dt,
        constrained_dofs=constrained_dofs,
    )

    def field_from_nodes(node_values):
        """Ghost-complete vector from values given in mesh node order."""
        vec = DistributedVector(exchange)
        vec.assign_owned(np.asarray(node_values)[partition.dof_to_node[partition.owned_dofs]])
        vec.update_ghosts()
        return vec

    def to_node_order(global_values):
        return np.asarray(global_values)[partition.node_to_dof]

    return SimpleNamespace(
        mesh=mesh,
        group=group,
        partition=partition,
        exchange=exchange,
        assembler=assembler,
        jacobian=DistributedMatrix(exchange),
        residual=DistributedVector(exchange),
        field_from_nodes=field_from_nodes,
        to_node_order=to_node_order,
    )


@pytest.fixture
def make_system():
    """Factory building the assembly chain of one rank."""
    return _make_system


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(42)
