"""
Local LLM Runtime Service

REST and WebSocket APIs over the local model runtime.
"""

from .main import app

__all__ = ["app"]
