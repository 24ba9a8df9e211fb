"""Fantasy football sync pipeline: job worker, metrics and recommendations."""

__version__ = "0.1.0"
