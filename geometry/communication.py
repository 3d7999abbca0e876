# geometry/communication.py
"""Collective operations used to keep worker replicas of the mesh in lockstep."""

from __future__ import annotations

import logging

logger = logging.getLogger("device_solver")


class SerialCommunicator:
    """Single-worker communicator; every collective is a local no-op."""

    rank = 0
    size = 1

    @property
    def is_primary(self) -> bool:
        return self.rank == 0

    def broadcast(self, obj, root: int = 0):
        return obj

    def gather(self, obj, root: int = 0):
        return [obj]

    def barrier(self) -> None:
        return None

    def __repr__(self) -> str:  # pragma: no cover - simple utility
        return f"{self.__class__.__name__}(rank={self.rank}, size={self.size})"


class MPICommunicator(SerialCommunicator):
    """Communicator backed by ``mpi4py`` (selected with ``--mpi``)."""

    def __init__(self, comm=None) -> None:
        if comm is None:
            from mpi4py import MPI

            comm = MPI.COMM_WORLD
        self.comm = comm
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()
        logger.debug("MPI communicator ready: rank %d of %d", self.rank, self.size)

    def broadcast(self, obj, root: int = 0):
        return self.comm.bcast(obj, root=root)

    def gather(self, obj, root: int = 0):
        return self.comm.gather(obj, root=root)

    def barrier(self) -> None:
        self.comm.Barrier()
