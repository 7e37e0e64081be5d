"""pipebench: load generator for streaming inference-pipeline services."""

__version__ = "0.3.0"
