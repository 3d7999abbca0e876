import logging

from commands.base import Command
from runtime.orchestrator import run_solve

logger = logging.getLogger("device_solver")


class SolveCommand(Command):
    def execute(self, context, card):
        if not context.system.built:
            raise card.error("SOLVE requires a mesh; add a MESH or IMPORT card first")
        run_solve(context, card)
