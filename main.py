import argparse
import logging
import os
import sys

from commands.context import CommandContext
from commands.executor import run_deck
from core.deck import load_deck
from core.exceptions import DeviceSolverError
from runtime.logging_config import setup_logging

logger = logging.getLogger("device_solver")


def resolve_deck_path(path: str) -> str:
    """Return a valid deck path, allowing a path without extension."""
    if os.path.isfile(path):
        return path
    for suffix in (".yaml", ".yml", ".json"):
        if os.path.isfile(path + suffix):
            return path + suffix
    raise FileNotFoundError(f"Cannot find deck '{path}' (.yaml/.yml/.json)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Device Solver Simulation Driver")
    parser.add_argument("-i", "--input", required=True, help="Command deck (YAML or JSON)")
    parser.add_argument(
        "--solution-file",
        default=None,
        help="Result document written after every recorded solution (.json/.yaml).",
    )
    parser.add_argument("--log", default=None, help="Optional log file")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress console output")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument(
        "--mpi",
        action="store_true",
        help="Run data-parallel across MPI ranks (requires mpi4py).",
    )
    parser.add_argument(
        "--debugger",
        action="store_true",
        help="Enter a post-mortem debugger (ipdb/pdb) on uncaught exceptions.",
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    old_excepthook = sys.excepthook
    if args.debugger:
        import traceback

        def _post_mortem_excepthook(exc_type, exc, tb):
            if issubclass(exc_type, KeyboardInterrupt):
                return old_excepthook(exc_type, exc, tb)
            traceback.print_exception(exc_type, exc, tb)
            try:
                import ipdb  # type: ignore

                ipdb.post_mortem(tb)
            except ImportError:
                import pdb

                pdb.post_mortem(tb)

        sys.excepthook = _post_mortem_excepthook

    try:
        deck_path = resolve_deck_path(args.input)
    except FileNotFoundError as exc:
        print(exc, file=sys.stderr)
        sys.exit(1)

    communicator = None
    if args.mpi:
        from geometry.communication import MPICommunicator

        communicator = MPICommunicator()

    global logger
    logger = setup_logging(
        args.log,
        quiet=args.quiet,
        debug=args.debug,
        rank=communicator.rank if communicator else 0,
        size=communicator.size if communicator else 1,
    )

    try:
        deck = load_deck(deck_path)
        context = CommandContext.from_deck(
            deck, communicator=communicator, solution_file=args.solution_file
        )
        run_deck(context)
    except DeviceSolverError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    finally:
        if args.debugger:
            sys.excepthook = old_excepthook

    if context.solution_file and context.lifecycle.is_primary:
        context.document.save(context.solution_file)
    if context.degraded:
        logger.warning("Run finished in degraded mode; see hook errors above.")
    else:
        logger.info("Run complete: %d solution groups recorded.", len(context.document.groups))
    return context


if __name__ == "__main__":
    main()
