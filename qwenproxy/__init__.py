"""OpenAI-compatible proxy for the Qwen chat service."""

from ._version import __version__


__all__ = ["__version__"]
