"""Session-state store and workflow orchestration for AI CLI tools."""

__version__ = "0.1.0"

__all__ = ["__version__"]
