"""Session scheduler: long-running sessions that invoke an external command on a cadence."""

__version__ = "0.1.0"

__all__ = ["__version__"]
