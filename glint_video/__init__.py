"""Video identifier resolution and record reconciliation for the Glint app."""

__version__ = "0.1.0"
