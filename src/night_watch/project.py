"""Per-project coordination context shared by status, worker, and actions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from night_watch.config import ProjectConfig, Settings
from night_watch.models import Role
from night_watch.prd.layout import PrdLayout
from night_watch.runtime.keys import canonical_project_path, project_runtime_key, project_store_key
from night_watch.runtime.locks import LockManager


@dataclass(slots=True)
class ProjectContext:
    project_dir: Path
    config: ProjectConfig
    locks: LockManager

    @classmethod
    def load(cls, project_dir: Path, settings: Settings) -> ProjectContext:
        canonical = Path(canonical_project_path(project_dir))
        return cls(
            project_dir=canonical,
            config=ProjectConfig.load(canonical),
            locks=LockManager(settings.lock_prefix),
        )

    @property
    def runtime_key(self) -> str:
        return project_runtime_key(self.project_dir)

    @property
    def store_key(self) -> str:
        return project_store_key(self.project_dir)

    @property
    def prd_dir(self) -> Path:
        return self.config.prd_path

    @property
    def layout(self) -> PrdLayout:
        return PrdLayout(self.prd_dir)

    def lock_path(self, role: Role) -> Path:
        return self.locks.path_for(self.runtime_key, role)

    @property
    def executor_lock(self) -> Path:
        return self.lock_path(Role.EXECUTOR)
