"""Image model and image stores."""

from .lister import LayerLister
from .models import Image, ImageConfig, Layer, append_layer, set_label
from .store import ImageStore, open_image_store

__all__ = [
    "Image",
    "ImageConfig",
    "ImageStore",
    "Layer",
    "LayerLister",
    "append_layer",
    "open_image_store",
    "set_label",
]
