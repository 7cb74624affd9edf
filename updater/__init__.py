"""Single-host deployment update orchestrator."""

__version__ = "0.1.0"
