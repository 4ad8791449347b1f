"""HTTP surface of the metered execution core."""

__version__ = "0.3.0"
