"""OpenAI-compatible proxy for Harmony-dialect models with server-side tool execution."""

__version__ = "1.0.0"

__all__ = ["__version__"]
