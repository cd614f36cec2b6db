"""Filesystem-coordinated multi-agent teams."""

__version__ = "0.1.0"
