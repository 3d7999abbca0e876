from commands.configuration import (
    AttachCommand,
    BoundarySetCommand,
    HookCommand,
    MethodCommand,
    ModelCommand,
    NodeSetCommand,
    PMICommand,
    RegionSetCommand,
    SourceApplyCommand,
)
from commands.io import ExportCommand, ImportCommand
from commands.mesh_ops import (
    ExtendCommand,
    MeshCommand,
    PlotMeshCommand,
    RefineConformCommand,
    RefineHierarchicalCommand,
    RefineUniformCommand,
    RotateCommand,
)
from commands.solve import SolveCommand

COMMAND_REGISTRY = {
    "MESH": MeshCommand(),
    "MODEL": ModelCommand(),
    "METHOD": MethodCommand(),
    "PMI": PMICommand(),
    "HOOK": HookCommand(),
    "SOLVE": SolveCommand(),
    "EXPORT": ExportCommand(),
    "IMPORT": ImportCommand(),
    "NODESET": NodeSetCommand(),
    "REFINE.CONFORM": RefineConformCommand(),
    "REFINE.HIERARCHICAL": RefineHierarchicalCommand(),
    "REFINE.UNIFORM": RefineUniformCommand(),
    "REGIONSET": RegionSetCommand(),
    "BOUNDARYSET": BoundarySetCommand(),
    "ATTACH": AttachCommand(),
    "SOURCEAPPLY": SourceApplyCommand(),
    "EXTEND": ExtendCommand(),
    "ROTATE": RotateCommand(),
    "PLOTMESH": PlotMeshCommand(),
}


def get_command(name):
    return COMMAND_REGISTRY.get(str(name).upper())
