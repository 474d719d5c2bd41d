# Copyright (c) Syntropy Systems
"""labhand HTTP server module."""

from .app import create_app

__all__ = ["create_app"]
