"""Tar handling: layer construction and saved image archives."""

from .layer import LayerBuilder, write_tar
from .reader import SavedImageReader

__all__ = ["LayerBuilder", "SavedImageReader", "write_tar"]
