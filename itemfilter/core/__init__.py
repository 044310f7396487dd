"""itemfilter Core - Shared utilities and infrastructure.

Import specific functions from submodules:
    from itemfilter.core.config import ConfigManager
    from itemfilter.core.logging import Logger
    from itemfilter.core import constants
"""

# Re-export main module references for convenience
from itemfilter.core import config, constants, logging

__all__ = [
    "config",
    "constants",
    "logging",
]
