"""Service orchestration and deployment core for local and remote AI infrastructure."""

__version__ = "0.1.0"
