"""Workspace management for local repository staging."""

from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from pathlib import Path

from ..gitops import redact_url


@dataclass
class WorkspaceContext:
    """Represents the staging area of one repository."""

    repo_url: str
    root: Path
    repo_dir: Path
    source_dir: Path
    metadata_file: Path
    run_id: str


class WorkspaceManager:
    """Hands out one stable staging directory per repository.

    The directory survives between runs so a second stage of an unchanged
    ref is a fetch plus a no-op fast-forward instead of a fresh clone.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def prepare(self, repo_url: str) -> WorkspaceContext:
        clean_url = redact_url(repo_url)
        repo_dir = self.root / self._slugify_repo(clean_url)
        source_dir = repo_dir / "source"
        repo_dir.mkdir(parents=True, exist_ok=True)

        context = WorkspaceContext(
            repo_url=clean_url,
            root=self.root,
            repo_dir=repo_dir,
            source_dir=source_dir,
            metadata_file=repo_dir / "metadata.json",
            run_id=self._generate_run_id(clean_url),
        )
        self.update_metadata(
            context,
            repo_url=clean_url,
            run_id=context.run_id,
            source_dir=str(source_dir),
            prepared_at=int(time.time()),
        )
        return context

    def update_metadata(self, context: WorkspaceContext, **fields: object) -> None:
        payload = self.read_metadata(context)
        payload.update(fields)
        context.metadata_file.write_text(
            json.dumps(payload, indent=2),
            encoding="utf-8",
        )

    def read_metadata(self, context: WorkspaceContext) -> dict:
        if context.metadata_file.exists():
            return json.loads(context.metadata_file.read_text(encoding="utf-8"))
        return {}

    def _slugify_repo(self, repo_url: str) -> str:
        name = repo_url.rstrip("/").split("/")[-1].split(":")[-1]
        if name.endswith(".git"):
            name = name[:-4]
        # 同名仓库（不同 owner）不能共用目录
        digest = hashlib.sha1(repo_url.encode("utf-8")).hexdigest()[:8]
        return f"{name or 'repository'}-{digest}"

    def _generate_run_id(self, repo_url: str) -> str:
        token = f"{repo_url}-{time.time_ns()}".encode("utf-8")
        return hashlib.sha1(token).hexdigest()[:8]
