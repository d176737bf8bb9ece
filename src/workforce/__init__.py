"""Planning-and-execution engine: intent routing, plan synthesis, scheduled workers."""

__all__ = ["__version__"]

__version__ = "0.1.0"
