"""Build manifest detection for staged repositories."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from ..errors import BuildFilesMissingError

logger = logging.getLogger(__name__)


class ManifestKind(str, Enum):
    COMPOSE = "compose"
    DOCKERFILE = "dockerfile"


@dataclass(frozen=True)
class BuildManifest:
    kind: ManifestKind
    path: str          # POSIX 相对路径（相对于仓库根目录）
    source_dir: Path

    @property
    def is_compose(self) -> bool:
        return self.kind is ManifestKind.COMPOSE

    def to_payload(self) -> dict:
        return {"kind": self.kind.value, "path": self.path}


class ManifestScanner:
    """Finds the file that tells us how to build and run the application."""

    COMPOSE_FILES = ["compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml"]
    DOCKER_FILES = ["Dockerfile", "dockerfile", "Containerfile"]

    def expected_files(self) -> List[str]:
        return self.COMPOSE_FILES + self.DOCKER_FILES

    def scan(self, source_dir: Path, compose_override: Optional[str] = None) -> BuildManifest:
        source_dir = Path(source_dir).resolve()
        if compose_override:
            return self._resolve_override(source_dir, compose_override)

        for name in self.COMPOSE_FILES:
            if (source_dir / name).is_file():
                logger.info("Using compose manifest: %s", name)
                return BuildManifest(ManifestKind.COMPOSE, name, source_dir)
        for name in self.DOCKER_FILES:
            if (source_dir / name).is_file():
                logger.info("Using Dockerfile: %s", name)
                return BuildManifest(ManifestKind.DOCKERFILE, name, source_dir)
        raise BuildFilesMissingError(str(source_dir), self.expected_files())

    def _resolve_override(self, source_dir: Path, override: str) -> BuildManifest:
        candidate = Path(override)
        if not candidate.is_absolute():
            candidate = source_dir / candidate
        candidate = candidate.resolve()
        try:
            relative = candidate.relative_to(source_dir)
        except ValueError:
            raise BuildFilesMissingError(
                str(source_dir),
                [override],
                hint="--compose-file must point at a file inside the repository.",
            ) from None
        if not candidate.is_file():
            raise BuildFilesMissingError(str(source_dir), [override])
        logger.info("Using compose manifest override: %s", relative.as_posix())
        return BuildManifest(ManifestKind.COMPOSE, relative.as_posix(), source_dir)
