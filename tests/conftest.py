import os
from pathlib import Path

import pytest

from taskvault.config import Settings
from taskvault.store import FileStore

DOMAIN = "payment-fraud-detection"

BACKLOG = """# Backlog: payment-fraud-detection

## 2026-02-15

| Priority | ID | Description | Feature | Effort | Vibe |
| --- | --- | --- | --- | --- | --- |
| High | F-26-02-15-00 | Score card-present transactions | /features/fraud-scoring | 3 | focused |
| Med | F-26-02-15-01 | Tune velocity thresholds | /features/velocity | 1.5 |  |
"""


class Workspace:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.settings = Settings(root=root)

    def write(self, key: str, text: str) -> Path:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def read(self, key: str) -> str:
        return (self.root / key).read_text(encoding="utf-8")

    def exists(self, key: str) -> bool:
        return (self.root / key).exists()

    def backlog(self, domain: str = DOMAIN) -> str:
        return self.settings.backlog_key(domain)

    def completed(self, domain: str = DOMAIN) -> str:
        return self.settings.completed_key(domain)

    def seal(self, domain: str = DOMAIN) -> str:
        return self.settings.snapshot_key(domain)

    def feature(self, name: str, readme: str) -> None:
        self.write(f"features/{name}/README.md", readme)

    def store(self) -> FileStore:
        return FileStore(self.root, self.settings.layout.state_dir)


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    ws = Workspace(tmp_path)
    ws.write(ws.backlog(), BACKLOG)
    return ws


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    _ = config
    run_slow = os.getenv("RUN_SLOW_TESTS", "") or os.getenv("TASKVAULT_RUN_SLOW", "")
    if str(run_slow).strip().lower() in {"1", "true", "yes"}:
        return
    skip_slow = pytest.mark.skip(reason="set RUN_SLOW_TESTS=1 to run slow tests")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)
