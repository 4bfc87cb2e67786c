# jobrelay/cli/commands: one module per command group.

from .config_cmd import config
from .maintenance import inspect, sweep
from .serve import serve

__all__ = [
    "config",
    "inspect",
    "serve",
    "sweep",
]
