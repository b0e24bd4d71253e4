"""shipyard: provision a remote host over SSH and deploy a containerized app."""

__version__ = "0.1.0"

__all__ = ["__version__"]
