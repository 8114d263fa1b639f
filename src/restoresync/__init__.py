"""restoresync: two-tree file sync with block checksum manifests."""

__version__ = "0.4.0"
