"""Staged, distribution-shaped load against a URL-shortening service."""

__version__ = "0.1.0"
