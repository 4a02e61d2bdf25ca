"""Local background removal: guided-filter matting and point-prompted selection."""

__version__ = "0.1.0"
