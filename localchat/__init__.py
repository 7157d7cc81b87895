"""localchat - a local chat client for Ollama-compatible generation servers."""

__version__ = "0.1.0"
