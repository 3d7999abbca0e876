import json
import logging
import os

import numpy as np

from commands.base import Command
from core.exceptions import InputOutputError
from geometry.mesh import Mesh
from runtime.boundary import BCType

logger = logging.getLogger("device_solver")

STRUCTURE_FORMAT = "device-structure"
STRUCTURE_VERSION = 1

EXPORT_TARGETS = ("structfile", "bcinfo", "nodeinfo")
EXPORT_OPTIONS = ("lunit", "numbering")
IMPORT_TARGETS = ("structfile",)

# Mesh coordinates are in micrometres.
LENGTH_UNITS = {"m": 1e-6, "cm": 1e-4, "um": 1.0, "nm": 1e3}


def structure_to_dict(system) -> dict:
    """Mesh, region fields and boundary state of ``system`` as plain data."""
    return {
        "format": STRUCTURE_FORMAT,
        "version": STRUCTURE_VERSION,
        "mesh": system.mesh.to_dict(),
        "regions": {
            region.name: {
                "material": region.material.name,
                "variables": {k: v.tolist() for k, v in region.variables.items()},
            }
            for region in system.regions
        },
        "boundaries": [
            {
                "label": bc.label,
                "type": bc.bc_type.value,
                "electrode": bc.electrode_label,
                "scalars": dict(bc.scalars),
                "potential": bc.potential,
                "current": bc.current,
                "initial_potential": bc.initial_potential,
            }
            for bc in system.boundaries
        ],
    }


def write_structure(system, path: str) -> None:
    with open(path, "w") as f:
        json.dump(structure_to_dict(system), f, indent=2)
    logger.info("Structure written to %s", path)


def read_structure(path: str) -> dict:
    if not os.path.isfile(path):
        raise InputOutputError(f"structure file '{path}' does not exist", path=path)
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise InputOutputError(f"cannot read structure file '{path}': {exc}", path=path) from exc
    if data.get("format") != STRUCTURE_FORMAT:
        raise InputOutputError(f"'{path}' is not a device structure file", path=path)
    return data


def write_bcinfo(system, path: str) -> None:
    with open(path, "w") as f:
        f.write("# label\ttype\telectrode\tnodes\tpotential\tcurrent\n")
        for bc in system.boundaries:
            f.write(
                f"{bc.label}\t{bc.bc_type.value}\t{bc.electrode_label or '-'}\t"
                f"{len(bc.nodes)}\t{bc.potential:.8e}\t{bc.current:.8e}\n"
            )
    logger.info("Boundary information written to %s", path)


def write_nodeinfo(system, path: str, lunit: str = "um", numbering: str = "global") -> None:
    scale = LENGTH_UNITS[lunit]
    dim = system.dimension
    axes = ["x", "y", "z"][:dim]
    with open(path, "w") as f:
        for region in system.regions:
            names = list(region.variables)
            f.write(f"# region {region.name} ({region.material.name})\n")
            f.write("# " + "\t".join(["node"] + axes + names) + "\n")
            coords = system.mesh.points[region.node_ids] * scale
            for local, node in enumerate(region.node_ids):
                index = int(node) if numbering == "global" else local
                row = [f"{c:.8e}" for c in coords[local]]
                row += [f"{region.variables[n][local]:.8e}" for n in names]
                f.write("\t".join([str(index)] + row) + "\n")
    logger.info("Node information written to %s (%s)", path, lunit)


class ExportCommand(Command):
    def execute(self, context, card):
        unsupported = [
            name for name in card.params if name not in EXPORT_TARGETS + EXPORT_OPTIONS
        ]
        if unsupported:
            raise InputOutputError(
                f"{card.location} EXPORT: unsupported export target(s) {', '.join(unsupported)}"
            )
        targets = [name for name in EXPORT_TARGETS if card.is_parameter_exist(name)]
        if not targets:
            raise InputOutputError(f"{card.location} EXPORT: no export target given")
        lunit = card.get_enum("lunit", list(LENGTH_UNITS), "um")
        numbering = card.get_enum("numbering", ["global", "local"], "global")
        if not context.lifecycle.is_primary:
            return
        system = context.system
        if card.is_parameter_exist("structfile"):
            write_structure(system, card.get_string("structfile"))
        if card.is_parameter_exist("bcinfo"):
            write_bcinfo(system, card.get_string("bcinfo"))
        if card.is_parameter_exist("nodeinfo"):
            write_nodeinfo(system, card.get_string("nodeinfo"), lunit, numbering)


class ImportCommand(Command):
    """Replace the device with a previously exported structure file."""

    def execute(self, context, card):
        unsupported = [name for name in card.params if name not in IMPORT_TARGETS]
        if unsupported:
            raise InputOutputError(
                f"{card.location} IMPORT: unsupported import format(s) {', '.join(unsupported)}"
            )
        path = card.get_string("structfile")
        if path is None:
            raise InputOutputError(f"{card.location} IMPORT: no structure file given")
        # Read and validate everything before touching the live system.
        data = read_structure(path)
        mesh = Mesh.from_dict(data["mesh"])

        lifecycle = context.lifecycle
        system = context.system
        lifecycle.generator = None
        lifecycle.clear(system)
        lifecycle.replace(mesh)
        lifecycle.broadcast()
        system.build_simulation_system(lifecycle.mesh)
        system.init_region()
        self._restore(system, data, path)
        context.doping_solver = None
        context.mole_solver = None
        system.has_dc_solution = False
        logger.info("Imported structure from %s", path)

    @staticmethod
    def _restore(system, data, path):
        deck_labels = set()
        if system.deck is not None:
            deck_labels = {c.get_string("id") for c in system.deck.cards_for("BOUNDARY")}
        for region in system.regions:
            saved = data["regions"].get(region.name)
            if saved is None:
                logger.warning("%s: region '%s' has no stored fields.", path, region.name)
                continue
            for name, values in saved["variables"].items():
                values = np.asarray(values, dtype=float)
                if region.has_variable(name) and len(values) == region.n_nodes:
                    region.variables[name][:] = values
        for saved in data.get("boundaries", []):
            if not system.boundaries.has_bc(saved["label"]):
                continue
            bc = system.boundaries.get_bc(saved["label"])
            if saved["label"] not in deck_labels:
                bc.bc_type = BCType(saved["type"])
                bc.electrode_label = saved.get("electrode")
                bc.scalars.update(saved.get("scalars", {}))
            bc.potential = float(saved.get("potential", 0.0))
            bc.current = float(saved.get("current", 0.0))
            bc.initial_potential = saved.get("initial_potential")
