"""Image format conversion with byte-size targeting."""

__version__ = "1.0.0"
