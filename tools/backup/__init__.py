from .archive import make_archive_tool
from .copy import make_copy_tool

__all__ = ["make_archive_tool", "make_copy_tool"]
