"""Remote control server for a single arecord capture session."""

__version__ = "0.1.0"
