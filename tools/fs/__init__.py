from .purge import run as purge_run
from .usage import run as usage_run

__all__ = ["purge_run", "usage_run"]
