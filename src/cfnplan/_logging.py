import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Send log records to stderr through rich so stdout stays machine readable."""
    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(
        console=Console(stderr=True), show_time=verbose, show_path=False
    )
    logging.basicConfig(
        level=level, handlers=[handler], format="%(message)s", force=True
    )
    # botocore is very chatty at DEBUG
    logging.getLogger("botocore").setLevel(max(level, logging.INFO))
    logger = logging.getLogger("cfnplan")
    logger.debug(f"Logging configured with level {logging.getLevelName(level)}")
    return logger
