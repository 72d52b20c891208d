"""Local git checkouts that serve reads while refreshing safely."""

from gitvault.checkout.archive import entry_name, matches_prefix, write_archive
from gitvault.checkout.checkout import Checkout, Reference, split_path
from gitvault.checkout.locking import ReadWriteLock
from gitvault.checkout.stream import BlobStream

__all__ = [
    "BlobStream",
    "Checkout",
    "ReadWriteLock",
    "Reference",
    "entry_name",
    "matches_prefix",
    "split_path",
    "write_archive",
]
