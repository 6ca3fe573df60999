"""Resolve, build and pin container image references in Kubernetes configuration."""

__version__ = "0.1.0"