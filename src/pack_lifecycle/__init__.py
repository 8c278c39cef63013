"""pack-lifecycle - Build container images from source with buildpacks."""

__version__ = "0.1.0"

from .build import Phase, PhaseOrchestrator, run_build
from .core.types import EngineConfig, LifecycleConfig, RegistryConfig
from .engine import DockerEngine, Engine
from .exceptions import (
    BlobUploadError,
    DetectionError,
    EngineError,
    ImageAccessError,
    ImageNotFound,
    LayerConstructionError,
    ManifestError,
    PackError,
    PhaseFailed,
    RebaseBoundaryNotFound,
    RegistryConnectionError,
    TarReadError,
)
from .image import Image, ImageStore, Layer, open_image_store
from .metadata import BuildMetadata
from .models import Buildpack, BuildpackGroup, BuildSession
from .rebase import Rebaser, run_rebase

__all__ = [
    "BlobUploadError",
    "BuildMetadata",
    "BuildSession",
    "Buildpack",
    "BuildpackGroup",
    "DetectionError",
    "DockerEngine",
    "Engine",
    "EngineConfig",
    "EngineError",
    "Image",
    "ImageAccessError",
    "ImageNotFound",
    "ImageStore",
    "Layer",
    "LayerConstructionError",
    "LifecycleConfig",
    "ManifestError",
    "PackError",
    "Phase",
    "PhaseFailed",
    "PhaseOrchestrator",
    "RebaseBoundaryNotFound",
    "Rebaser",
    "RegistryConfig",
    "RegistryConnectionError",
    "TarReadError",
    "open_image_store",
    "run_build",
    "run_rebase",
]
