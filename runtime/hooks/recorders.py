# runtime/hooks/recorders.py
"""Built-in hooks writing whitespace-separated tables on the primary worker."""

from __future__ import annotations

import logging

import numpy as np

from runtime.hooks.base import Hook

logger = logging.getLogger("device_solver")


def _independent(snapshot: dict) -> tuple[str, float]:
    for key in ("frequency", "time", "sweep"):
        if key in snapshot:
            return key, float(snapshot[key])
    return "index", float(snapshot.get("index", 0))


def _write_table(path: str, header: list[str], rows: list[list[float]], append: bool) -> None:
    mode = "a" if append else "w"
    with open(path, mode) as f:
        f.write("# " + "\t".join(header) + "\n")
        for row in rows:
            f.write("\t".join(f"{v:.8e}" for v in row) + "\n")
    logger.info("Wrote %d rows to %s", len(rows), path)


class IVRecorderHook(Hook):
    """Electrode voltages and currents after every converged step."""

    def __init__(self, name: str = "iv", params: dict | None = None) -> None:
        super().__init__(name, params)
        self.rows: list[list[float]] = []
        self.header: list[str] = []

    def on_init(self, solver) -> None:
        self.rows = []
        self.header = []

    def post_solve(self, solver, snapshot: dict) -> None:
        key, value = _independent(snapshot)
        electrodes = snapshot.get("electrodes", {})
        if not self.header:
            self.header = [key]
            for label in electrodes:
                self.header += [f"{label}.V", f"{label}.I"]
        row = [value]
        for label in electrodes:
            row += [electrodes[label]["voltage"], electrodes[label]["current"]]
        self.rows.append(row)

    def on_close(self, solver) -> None:
        if not self.rows or not solver.is_primary:
            return
        path = self.params.get("file") or f"{solver.config.out_prefix}.dat"
        _write_table(path, self.header, self.rows, solver.config.out_append)


class MonitorHook(Hook):
    """History of one nodal variable at the node nearest to ``(x, y[, z])``."""

    def __init__(self, name: str = "monitor", params: dict | None = None) -> None:
        super().__init__(name, params)
        self.variable = str(self.params.get("variable", "potential"))
        self.rows: list[list[float]] = []
        self._target = None

    def on_init(self, solver) -> None:
        system = solver.system
        dim = system.dimension
        point = np.array([float(self.params.get(a, 0.0)) for a in ("x", "y", "z")[:dim]])
        best = None
        for region in system.regions:
            if not region.has_variable(self.variable):
                continue
            coords = system.mesh.points[region.node_ids]
            dist = np.linalg.norm(coords - point, axis=1)
            idx = int(np.argmin(dist))
            if best is None or dist[idx] < best[0]:
                best = (float(dist[idx]), region, idx)
        if best is None:
            raise KeyError(f"Variable '{self.variable}' not found in any region.")
        self._target = (best[1], best[2])
        self.rows = []

    def post_solve(self, solver, snapshot: dict) -> None:
        region, idx = self._target
        _, value = _independent(snapshot)
        self.rows.append([value, float(region.variables[self.variable][idx])])

    def on_close(self, solver) -> None:
        if not self.rows or not solver.is_primary:
            return
        path = self.params.get("file") or f"{self.name}.dat"
        _write_table(path, ["step", self.variable], self.rows, append=False)


class CVHook(Hook):
    """Capacitance and conductance of the AC-scanned electrode versus frequency."""

    def __init__(self, name: str = "cv", params: dict | None = None) -> None:
        super().__init__(name, params)
        self.rows: list[list[float]] = []

    def on_init(self, solver) -> None:
        self.rows = []

    def post_solve(self, solver, snapshot: dict) -> None:
        admittance = snapshot.get("admittance")
        if not admittance:
            return
        scanned = snapshot.get("acscan")
        entry = admittance[scanned]
        self.rows.append([snapshot["frequency"], entry["capacitance"], entry["conductance"]])

    def on_close(self, solver) -> None:
        if not self.rows or not solver.is_primary:
            return
        path = self.params.get("file") or f"{solver.config.out_prefix}.cv.dat"
        _write_table(path, ["frequency", "C", "G"], self.rows, solver.config.out_append)
