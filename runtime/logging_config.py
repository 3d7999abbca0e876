import logging
from typing import Optional


def setup_logging(
    log_file: Optional[str],
    *,
    quiet: bool = False,
    debug: bool = False,
    rank: int = 0,
    size: int = 1,
) -> logging.Logger:
    """Configure and return the shared `device_solver` logger.

    Handlers are replaced on every call, so repeated runs in one process do
    not duplicate output. Pass `log_file` to also write the run log to disk.

    In a multi-worker run every worker executes the same deck, so only the
    primary worker (rank 0) writes the log file and INFO console output;
    the other ranks report warnings and errors tagged with their rank.
    """
    logger = logging.getLogger("device_solver")
    # Propagation stays on so pytest's caplog sees records with quiet=True.
    logger.propagate = True

    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if size > 1:
        fmt = f"%(asctime)s - [rank {rank}] %(levelname)s - %(message)s"
    else:
        fmt = "%(asctime)s - %(levelname)s - %(message)s"
    formatter = logging.Formatter(fmt)

    if log_file and rank == 0:
        try:
            file_handler = logging.FileHandler(log_file, mode="w")
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as exc:
            print(f"[logging] Could not open log file '{log_file}': {exc}")

    if not quiet:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level if rank == 0 else logging.WARNING)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger
