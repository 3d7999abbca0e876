# geometry/lifecycle.py
"""Ownership of the single live mesh and its synchronization across workers."""

from __future__ import annotations

import logging

from core.exceptions import ConfigurationError, MeshStateError
from geometry.communication import SerialCommunicator
from geometry.generators import MeshGeneratorBase, get_generator
from geometry.mesh import Mesh

logger = logging.getLogger("device_solver")


class MeshLifecycleManager:
    """Holds the live mesh, the active generator and the communicator.

    The mesh is authoritative on the primary worker until :meth:`broadcast`
    publishes it; only then is it prepared for field attachment.
    """

    def __init__(self, communicator=None) -> None:
        self.comm = communicator or SerialCommunicator()
        self.mesh: Mesh | None = None
        self.generator: MeshGeneratorBase | None = None

    @property
    def is_primary(self) -> bool:
        return self.comm.rank == 0

    def generate(self, deck) -> Mesh | None:
        """Run the generator named by the MESH card (primary worker only)."""
        if self.generator is not None:
            raise ConfigurationError("mesh generation may only run once per deck")
        card = deck.first("MESH")
        if card is None:
            raise ConfigurationError("no MESH card in deck")
        type_tag = card.get_string("type", "s_tri3")
        try:
            self.generator = get_generator(type_tag, deck)
        except ConfigurationError as exc:
            raise card.error(exc.detail) from None
        if self.is_primary:
            self.mesh = self.generator.generate()
        else:
            self.mesh = None
        return self.mesh

    def replace(self, mesh: Mesh | None) -> None:
        """Install a new unprepared mesh (primary) before the next broadcast."""
        if mesh is not None:
            mesh.invalidate()
        self.mesh = mesh if self.is_primary else None

    def broadcast(self) -> Mesh:
        """Publish the primary's mesh to every worker and prepare it."""
        mesh = self.comm.broadcast(self.mesh, root=0)
        if mesh is None:
            raise MeshStateError("no mesh to broadcast")
        if not self.is_primary:
            mesh = mesh.copy()
        mesh.prepare_for_use()
        self.mesh = mesh
        self.comm.barrier()
        return mesh

    def gather(self, root: int = 0) -> Mesh | None:
        """Make the root's copy authoritative and mark it open for modification."""
        self.comm.barrier()
        if self.comm.rank != root:
            self.mesh = None
            return None
        if self.mesh is not None:
            self.mesh.invalidate()
        return self.mesh

    def clear(self, system=None, preserve_geometry: bool = False) -> None:
        """Detach the field data of ``system`` from the live mesh.

        With ``preserve_geometry`` the mesh stays live and prepared, so the
        system can be rebuilt on it without another broadcast. Otherwise the
        mesh is dropped as well and a new one must be installed with
        :meth:`replace`.
        """
        if system is not None:
            system.clear(preserve_geometry=preserve_geometry)
        if not preserve_geometry:
            self.mesh = None
