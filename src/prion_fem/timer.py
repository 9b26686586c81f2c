"""
Wall-clock timing of named solver sections.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterator, Optional
import logging

if TYPE_CHECKING:
    from .parallel import ProcessGroup


@dataclass
class SectionStats:
    """Accumulated timing of one section."""

    calls: int = 0
    wall_time: float = 0.0


class SectionTimer:
    """
    Accumulates wall time per named section.

    Example:
        timer = SectionTimer()
        with timer.section("Assemble system"):
            assembler.assemble(...)
    """

    def __init__(self, group: Optional["ProcessGroup"] = None):
        self.group = group
        self.sections: Dict[str, SectionStats] = {}
        self._start = time.perf_counter()

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        """Time the enclosed block under ``name``."""
        stats = self.sections.setdefault(name, SectionStats())
        start = time.perf_counter()
        try:
            yield
        finally:
            stats.calls += 1
            stats.wall_time += time.perf_counter() - start

    @property
    def elapsed(self) -> float:
        """Wall time since the timer was created."""
        return time.perf_counter() - self._start

    def summary(self) -> Dict[str, Dict[str, float]]:
        """
        Per-section statistics.

        Collective when the timer has a group: the reported wall time is the
        maximum over all ranks, and every rank must call this with the same
        section names.
        """
        result = {}
        for name in sorted(self.sections):
            stats = self.sections[name]
            wall = stats.wall_time
            if self.group is not None:
                wall = self.group.allreduce_max(wall)
            result[name] = {"calls": stats.calls, "wall_time": wall}
        return result

    def log_summary(self, logger: logging.Logger) -> None:
        """Log a summary table. Collective when the timer has a group."""
        total = self.elapsed
        if self.group is not None:
            total = self.group.allreduce_max(total)
        rows = self.summary()

        logger.info("+" + "-" * 62 + "+")
        logger.info(f"| {'Total wallclock time elapsed':<36}{total:>12.3e} s{'':>11}|")
        logger.info(f"| {'Section':<28}{'calls':>8}{'wall time':>14}{'% of total':>11} |")
        for name, stats in rows.items():
            share = 100.0 * stats["wall_time"] / total if total > 0 else 0.0
            logger.info(
                f"| {name:<28}{stats['calls']:>8d}{stats['wall_time']:>12.3e} s"
                f"{share:>9.1f} % |"
            )
        logger.info("+" + "-" * 62 + "+")
