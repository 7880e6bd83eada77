"""JSON persistence of deployment run state, keyed by run id."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..errors import RunStateError
from .models import DeploymentState, utc_now

logger = logging.getLogger(__name__)

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class StateStore:
    """Stores one JSON document per run under `root`.

    Writes go to a temporary file that is then renamed over the target, so a
    crash never leaves a half-written state behind.
    """

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def path_for(self, run_id: str) -> Path:
        if not _RUN_ID_PATTERN.match(run_id):
            raise RunStateError(f"Invalid run id: {run_id!r}")
        return self.root / f"{run_id}.json"

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    def save(self, state: DeploymentState) -> Path:
        target = self.path_for(state.run_id)
        self.root.mkdir(parents=True, exist_ok=True)
        state.updated_at = utc_now()
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{state.run_id}.", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def load(self, run_id: str) -> DeploymentState:
        path = self.path_for(run_id)
        if not path.is_file():
            raise RunStateError(f"No persisted state for run '{run_id}' in {self.root}")
        try:
            with path.open("r", encoding="utf-8") as handle:
                return DeploymentState.from_dict(json.load(handle))
        except (ValueError, KeyError) as exc:
            raise RunStateError(f"State file {path} is unreadable: {exc}") from exc

    def purge(self, run_id: str) -> bool:
        path = self.path_for(run_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("🗑️  Purged run state %s", path)
        return True

    def list_runs(self) -> List[Dict[str, Optional[str]]]:
        if not self.root.exists():
            return []
        runs = []
        for path in sorted(self.root.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                with path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except ValueError:
                runs.append({"run_id": path.stem, "status": "unreadable", "updated_at": None})
                continue
            runs.append({
                "run_id": data.get("run_id", path.stem),
                "status": data.get("status"),
                "updated_at": data.get("updated_at"),
                "failed_stage": data.get("failed_stage"),
            })
        return runs
