"""gitvault - Serve files, listings and archives from git repositories over HTTP."""

from gitvault.checkout import Checkout
from gitvault.context import RequestContext
from gitvault.directory import RepositoryDirectory
from gitvault.models import FileStat, RepositoryConfig, ServerConfig

__version__ = "0.1.0"
__all__ = [
    "Checkout",
    "FileStat",
    "RepositoryConfig",
    "RepositoryDirectory",
    "RequestContext",
    "ServerConfig",
]
