"""Log output for the command line. Library modules only create loggers."""
import logging

from rich.console import Console
from rich.logging import RichHandler


_configured: bool = False


def log_level(debug: bool = False, quiet: bool = False) -> int:
    if debug:
        return logging.DEBUG
    return logging.WARNING if quiet else logging.INFO


def configure_logging(debug: bool = False, quiet: bool = False):
    """Send log records to stderr through rich. Only the first call has any effect."""
    global _configured
    if _configured:
        return
    _configured = True
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        show_time=False,
        markup=False,
        rich_tracebacks=debug,
    )
    logging.captureWarnings(True)
    logging.basicConfig(
        level=log_level(debug, quiet),
        # Module names only matter when reading debug output
        format="%(name)s: %(message)s" if debug else "%(message)s",
        handlers=[handler],
    )
