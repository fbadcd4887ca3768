"""Prometheus exporter for ObjectServer event databases."""

from __future__ import annotations

import importlib.metadata as metadata

try:
    __version__ = metadata.version("objserv-exporter")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = ["__version__"]
