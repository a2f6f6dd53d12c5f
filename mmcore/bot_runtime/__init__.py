from .logging import setup_logger
from .loop import bootstrap_dependencies, run_bot_loop, run_range_loop
from .settings import AppSettings
from .wiring import Runtime, build_runtime

__all__ = [
    "AppSettings",
    "Runtime",
    "bootstrap_dependencies",
    "build_runtime",
    "run_bot_loop",
    "run_range_loop",
    "setup_logger",
]
