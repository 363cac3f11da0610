"""BizLevel AI assistant chat pipeline."""

__version__ = "0.1.0"
