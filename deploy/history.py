import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class DeploymentHistory:
    """Per-application ledger of the most recent deploy and rollback attempts."""

    def __init__(self, apps_dir, limit: int = 20):
        self.apps_dir = Path(apps_dir)
        self.limit = limit

    def _path(self, app_name: str) -> Path:
        return self.apps_dir / app_name / "deploy-history.json"

    def read(self, app_name: str) -> list[dict]:
        path = self._path(app_name)
        if not path.exists():
            return []
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read deployment history {path}: {e}")
            return []

    def record(self, app_name: str, **entry) -> dict:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        history = (self.read(app_name) + [entry])[-self.limit:]

        path = self._path(app_name)
        if path.exists():
            shutil.copy2(path, str(path) + ".bak")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(history, f, indent=4)
            f.write("\n")
        return entry
