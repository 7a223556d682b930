from .run import run as proc_run

__all__ = ["proc_run"]
