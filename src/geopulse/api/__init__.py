"""
HTTP service exposing estimation and generation.
"""

from .app import create_app

__all__ = ["create_app"]
