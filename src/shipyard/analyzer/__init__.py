"""Repository analyzer module for locating build manifests."""

from .manifests import BuildManifest, ManifestKind, ManifestScanner

__all__ = ["BuildManifest", "ManifestKind", "ManifestScanner"]
