from dataclasses import dataclass, field

from core.deck import Deck
from geometry.lifecycle import MeshLifecycleManager
from geometry.refinement import RefinementState
from parameters.solver_settings import MethodSettings
from runtime.hooks import HookRegistry
from runtime.results import ResultDocument
from runtime.system import SimulationSystem


@dataclass
class CommandContext:
    """Holds the shared state for one deck run."""

    deck: Deck
    system: SimulationSystem
    lifecycle: MeshLifecycleManager
    document: ResultDocument = field(default_factory=ResultDocument)
    hooks: HookRegistry = field(default_factory=HookRegistry)
    settings: MethodSettings = field(default_factory=MethodSettings)
    doping_solver: object = None
    mole_solver: object = None
    solution_file: str | None = None
    degraded: bool = False
    refinement_state: RefinementState = RefinementState.STABLE
    history: list[str] = field(default_factory=list)

    @classmethod
    def from_deck(cls, deck: Deck, *, communicator=None, solution_file=None) -> "CommandContext":
        return cls(
            deck=deck,
            system=SimulationSystem(deck),
            lifecycle=MeshLifecycleManager(communicator),
            solution_file=solution_file,
        )
