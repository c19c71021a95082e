"""Sprint Conductor: spec refinement and task planning driven by language models."""

__all__ = ["__version__"]

__version__ = "0.1.0"
