"""forge: a multi-ecosystem package manager."""

__version__ = "0.1.0"
