"""Identigraph: cross-source identity resolution into a temporal identity graph."""

__version__ = "0.1.0"
