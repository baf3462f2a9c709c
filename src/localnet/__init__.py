"""Localnet - run a local network of storage nodes as managed processes."""

__version__ = "0.1.0"
