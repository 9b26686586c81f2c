"""
Snapshot output of the solution field.

VTUSnapshotWriter gathers the distributed field on rank 0, maps it back to
mesh node order and writes one ``<basename>-NNNN.vtu`` file per frame with
meshio, plus a JSON index ``<basename>.json`` listing frame, time and file.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Tuple, Union
import json

import numpy as np
from numpy.typing import NDArray
import meshio

from .distributed import DistributedVector
from .mesh import TetMesh
from .partition import DomainPartition

if TYPE_CHECKING:
    from .parallel import ProcessGroup


class SnapshotSink(ABC):
    """Receiver of solution snapshots."""

    @abstractmethod
    def write(self, frame: int, time: float, field: DistributedVector) -> None:
        """
        Persist one snapshot. Collective.

        Args:
            frame: Frame index, increasing by one per call.
            time: Simulation time.
            field: Solution vector.
        """


class VTUSnapshotWriter(SnapshotSink):
    """
    Utility class for writing solution snapshots to VTU files.

    Attributes:
        output_dir: Directory receiving the files.
        basename: File prefix.
        field_name: Name of the point-data array.
    """

    def __init__(
        self,
        mesh: TetMesh,
        partition: DomainPartition,
        group: "ProcessGroup",
        output_dir: Union[str, Path],
        basename: str = "output",
        field_name: str = "u",
        write_partitioning: bool = False,
    ):
        self.mesh = mesh
        self.partition = partition
        self.group = group
        self.output_dir = Path(output_dir)
        self.basename = basename
        self.field_name = field_name
        self.write_partitioning = write_partitioning
        self.entries: List[Dict[str, Any]] = []

        if group.is_root:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    @property
    def index_path(self) -> Path:
        return self.output_dir / f"{self.basename}.json"

    def frame_path(self, frame: int) -> Path:
        # Zero-padded to four digits
        return self.output_dir / f"{self.basename}-{frame:04d}.vtu"

    def write(self, frame: int, time: float, field: DistributedVector) -> None:
        values = field.gather_global(root=0)
        if not self.group.is_root:
            return

        node_values = values[self.partition.node_to_dof]
        cell_data = None
        if self.write_partitioning:
            cell_data = {"partitioning": [self.partition.element_owner.astype(np.int32)]}

        path = self.frame_path(frame)
        meshio.Mesh(
            points=self.mesh.nodes,
            cells=[("tetra", self.mesh.elements)],
            point_data={self.field_name: node_values},
            cell_data=cell_data,
        ).write(path)

        self.entries.append({"frame": int(frame), "time": float(time), "file": path.name})
        with open(self.index_path, "w") as f:
            json.dump(
                {"field": self.field_name, "frames": self.entries},
                f,
                indent=2,
            )


def load_snapshot(
    output_dir: Union[str, Path],
    frame: int,
    basename: str = "output",
) -> Tuple[float, NDArray[np.float64]]:
    """
    Read one frame written by VTUSnapshotWriter.

    Args:
        output_dir: Directory holding the index and frame files.
        frame: Frame index.
        basename: File prefix.

    Returns:
        (time, nodal values in mesh node order).
    """
    output_dir = Path(output_dir)
    index_path = output_dir / f"{basename}.json"
    if not index_path.exists():
        raise FileNotFoundError(f"Snapshot index not found: {index_path}")

    with open(index_path, "r") as f:
        index = json.load(f)

    for entry in index["frames"]:
        if entry["frame"] == frame:
            data = meshio.read(output_dir / entry["file"])
            return entry["time"], np.asarray(data.point_data[index["field"]], dtype=np.float64)

    raise KeyError(f"Frame {frame} not found in {index_path}")
