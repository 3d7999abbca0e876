import os
import sys

import numpy as np
import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from core.deck import Deck
from core.exceptions import ConfigurationError, MeshStateError
from geometry.generators import Tet4Generator, Tri3Generator, get_generator
from geometry.lifecycle import MeshLifecycleManager
from geometry.mesh import Mesh
from sample_decks import build_context, moscap_cards, resistor_cards


def test_tri3_structured_grid_counts():
    deck = Deck.from_list(resistor_cards(nx=4, ny=2))
    mesh = Tri3Generator(deck).generate()
    assert mesh.dimension == 2
    assert mesh.n_points == 5 * 3
    assert mesh.n_cells == 2 * 4 * 2
    assert np.isclose(mesh.cell_volumes().sum(), 1.0 * 0.5)


def test_tet4_structured_grid_fills_the_box():
    cards = resistor_cards(nx=2, ny=1) + [{"Z.MESH": {"width": 0.25, "n.spaces": 1}}]
    mesh = Tet4Generator(Deck.from_list(cards)).generate()
    assert mesh.dimension == 3
    assert mesh.n_cells == 6 * 2 * 1 * 1
    assert np.isclose(mesh.cell_volumes().sum(), 1.0 * 0.5 * 0.25)


def test_regions_are_assigned_by_box_later_cards_winning():
    mesh = Tri3Generator(Deck.from_list(moscap_cards())).generate()
    names = [r.name for r in mesh.regions]
    assert names == ["oxide", "substrate"]
    centroids = mesh.cell_centroids()
    oxide = mesh.cell_region == names.index("oxide")
    assert np.all(centroids[oxide, 1] <= 0.1)
    assert np.all(centroids[~oxide, 1] >= 0.1)


def test_axis_segments_concatenate_with_ratio():
    cards = resistor_cards() + [{"X.MESH": {"width": 1.0, "n.spaces": 3, "ratio": 2.0}}]
    mesh = Tri3Generator(Deck.from_list(cards)).generate()
    xs = np.unique(mesh.points[:, 0])
    assert xs[-1] == pytest.approx(2.0)
    widths = np.diff(xs[xs >= 1.0 - 1e-12])
    assert widths[1] / widths[0] == pytest.approx(2.0)


def test_unknown_generator_type_is_fatal():
    with pytest.raises(ConfigurationError, match="unsupported mesh generator"):
        get_generator("s_quad4", Deck.from_list(resistor_cards()))


def test_generation_requires_regions():
    deck = Deck.from_list([{"X.MESH": {"width": 1}}, {"Y.MESH": {"width": 1}}])
    with pytest.raises(ConfigurationError, match="REGION"):
        Tri3Generator(deck).generate()


def test_mesh_is_unusable_until_broadcast():
    deck = Deck.from_list(resistor_cards())
    lifecycle = MeshLifecycleManager()
    mesh = lifecycle.generate(deck)
    assert not mesh.prepared
    with pytest.raises(MeshStateError):
        mesh.require_prepared()
    lifecycle.broadcast()
    assert lifecycle.mesh.prepared
    assert set(lifecycle.mesh.boundary_nodes) == {"anode", "cathode"}
    left = lifecycle.mesh.points[lifecycle.mesh.boundary_nodes["anode"], 0]
    assert np.allclose(left, 0.0)
    assert len(left) == 3


def test_generate_runs_once_per_run():
    deck = Deck.from_list(resistor_cards())
    lifecycle = MeshLifecycleManager()
    lifecycle.generate(deck)
    with pytest.raises(ConfigurationError, match="only run once"):
        lifecycle.generate(deck)


class _FakeComm:
    def __init__(self, rank):
        self.rank = rank
        self.size = 2
        self.published = None
        self.barriers = 0

    def broadcast(self, obj, root=0):
        return self.published

    def barrier(self):
        self.barriers += 1


def test_only_the_primary_generates_and_workers_receive_a_copy():
    deck = Deck.from_list(resistor_cards())
    primary = MeshLifecycleManager(_FakeComm(0))
    worker = MeshLifecycleManager(_FakeComm(1))
    assert primary.generate(deck) is not None
    assert worker.generate(deck) is None
    assert worker.is_primary is False

    worker.comm.published = primary.mesh
    received = worker.broadcast()
    assert received is not primary.mesh
    assert received.prepared
    assert received.n_cells == primary.mesh.n_cells
    assert worker.comm.barriers == 1


def test_mesh_dict_round_trip_preserves_tags():
    deck = Deck.from_list(moscap_cards())
    mesh = Tri3Generator(deck).generate()
    clone = Mesh.from_dict(mesh.to_dict())
    assert np.array_equal(clone.cells, mesh.cells)
    assert [r.material for r in clone.regions] == ["SiO2", "Si"]
    assert [b.label for b in clone.boundary_specs] == ["gate", "sub"]


def test_clear_preserving_geometry_keeps_the_prepared_mesh():
    context = build_context(resistor_cards())
    lifecycle, system = context.lifecycle, context.system
    mesh = lifecycle.mesh
    anode = mesh.boundary_nodes["anode"].copy()

    lifecycle.clear(system, preserve_geometry=True)
    assert lifecycle.mesh is mesh
    assert mesh.prepared
    assert np.array_equal(mesh.boundary_nodes["anode"], anode)
    assert system.regions == [] and len(system.boundaries) == 0
    assert system.mesh is mesh

    system.build_simulation_system(lifecycle.mesh)
    assert system.region("bulk").n_nodes == mesh.n_points


def test_clear_without_geometry_drops_the_mesh():
    context = build_context(resistor_cards())
    lifecycle, system = context.lifecycle, context.system
    lifecycle.clear(system)
    assert lifecycle.mesh is None
    assert system.mesh is None
    assert system.built is False
