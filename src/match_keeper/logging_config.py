"""
Centralized logging configuration for the match keeper.
Rich output for development, plain single-line output for production.
"""

import logging
import sys
from rich.logging import RichHandler
from rich.console import Console

NOISY_LOGGERS = ("web3", "urllib3", "httpx", "httpcore", "aiohttp", "asyncio")

def setup_logging(
    level: str = "INFO",
    use_rich: bool = True,
) -> None:
    """
    Set up consistent logging across the keeper and its service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        use_rich: Whether to use Rich's colored output (recommended for development)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if use_rich:
        console = Console(file=sys.stderr)

        handler = RichHandler(
            console=console,
            level=numeric_level,
            show_time=True,
            show_level=True,
            show_path=True,
            enable_link_path=True,
            rich_tracebacks=True,
            markup=False,  # Disable rich markup in log messages
            log_time_format="[%H:%M:%S]"
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "[%(asctime)s] %(levelname)-5s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))

    handler.setLevel(numeric_level)
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured: level={level}, rich={use_rich}")
