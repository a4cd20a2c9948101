from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LayoutPolicy(BaseModel):
    tasks_dir: str = "tasks"
    features_dir: str = "features"
    state_dir: str = ".taskvault"
    backlog_file: str = "backlog.md"
    completed_file: str = "completed.md"
    feature_description_file: str = "README.md"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TASKVAULT_")

    root: Path = Field(default_factory=Path.cwd)
    layout: LayoutPolicy = Field(default_factory=LayoutPolicy)
    feature_prefix: str = "/features/"
    require_feature_exists: bool = False
    vibe_tag_max_len: int = 32
    retry_budget: int = 5
    backend: Literal["file", "git"] = "file"
    push: bool = False
    remote: str = "origin"
    git_timeout_s: float = 30.0

    def backlog_key(self, domain: str) -> str:
        return f"{self.layout.tasks_dir}/{domain}/{self.layout.backlog_file}"

    def completed_key(self, domain: str) -> str:
        return f"{self.layout.tasks_dir}/{domain}/{self.layout.completed_file}"

    def snapshot_key(self, domain: str) -> str:
        return f"{self.layout.state_dir}/snapshots/{domain}.json"

    def ledger_path(self) -> Path:
        return self.root / self.layout.state_dir / "ledger.jsonl"

    def domain_of(self, key: str) -> str:
        parts = key.split("/")
        if len(parts) == 3 and parts[0] == self.layout.tasks_dir:
            return parts[1]
        return ""
