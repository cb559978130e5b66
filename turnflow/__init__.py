"""Turn execution engine for a tool-using coding assistant."""

__version__ = "0.1.0"
