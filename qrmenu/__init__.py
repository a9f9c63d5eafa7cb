"""Order lifecycle and real-time order boards for QR-menu restaurants."""

__version__ = "1.0.0"
