# orchestrator/settings.py
from __future__ import annotations
import os
import shlex
import sys
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel

DEFAULT_DATA_DIR = "/srv/bulk-jobs"


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _bool_env(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


class Settings(BaseModel):
    upload_dir: Path
    log_dir: Path
    output_dir: Path
    staged_dir: Path
    store_path: Path

    store_backend: str = "file"  # file | jsonbin
    jsonbin_api_key: str = ""
    jsonbin_jobs_bin_id: str = ""

    max_workers: int = 4
    items_per_worker: int = 100
    runner_command: Optional[List[str]] = None
    log_interval: float = 0.9
    zip_output: bool = True
    log_level: str = "INFO"

    @classmethod
    def for_data_dir(cls, data_dir: Path, **overrides) -> "Settings":
        data_dir = Path(data_dir)
        values = dict(
            upload_dir=data_dir / "uploads",
            log_dir=data_dir / "logs",
            output_dir=data_dir / "draft_products",
            staged_dir=data_dir / "staged",
            store_path=data_dir / "uploads" / "bulk-jobs.json",
        )
        values.update(overrides)
        return cls(**values)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        data_dir = Path(env.get("BULK_JOB_DATA_DIR", DEFAULT_DATA_DIR))
        upload_dir = Path(env.get("BULK_JOB_UPLOAD_DIR") or data_dir / "uploads")

        runner = env.get("BULK_JOB_RUNNER", "").strip()
        return cls(
            upload_dir=upload_dir,
            log_dir=Path(env.get("BULK_JOB_LOG_DIR") or data_dir / "logs"),
            output_dir=Path(env.get("BULK_JOB_OUTPUT_DIR") or data_dir / "draft_products"),
            staged_dir=Path(env.get("BULK_JOB_STAGED_DIR") or data_dir / "staged"),
            store_path=Path(env.get("BULK_JOB_STORE_PATH") or upload_dir / "bulk-jobs.json"),
            store_backend=env.get("BULK_JOB_STORE", "file").strip().lower() or "file",
            jsonbin_api_key=env.get("JSONBIN_API_KEY", ""),
            jsonbin_jobs_bin_id=env.get("JSONBIN_JOBS_BIN_ID", ""),
            max_workers=_int_env(env, "BULK_JOB_MAX_WORKERS", 4),
            items_per_worker=_int_env(env, "BULK_JOB_ITEMS_PER_WORKER", 100),
            runner_command=shlex.split(runner) if runner else None,
            log_interval=_float_env(env, "BULK_JOB_LOG_INTERVAL", 0.9),
            zip_output=_bool_env(env, "BULK_JOB_ZIP_OUTPUT", True),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

    def to_env(self) -> Dict[str, str]:
        """Environment for the spawned runner so it opens the same store and folders."""
        env = {
            "BULK_JOB_UPLOAD_DIR": str(self.upload_dir),
            "BULK_JOB_LOG_DIR": str(self.log_dir),
            "BULK_JOB_OUTPUT_DIR": str(self.output_dir),
            "BULK_JOB_STAGED_DIR": str(self.staged_dir),
            "BULK_JOB_STORE_PATH": str(self.store_path),
            "BULK_JOB_STORE": self.store_backend,
            "BULK_JOB_MAX_WORKERS": str(self.max_workers),
            "BULK_JOB_ITEMS_PER_WORKER": str(self.items_per_worker),
            "BULK_JOB_ZIP_OUTPUT": "1" if self.zip_output else "0",
            "LOG_LEVEL": self.log_level,
        }
        if self.store_backend == "jsonbin":
            env["JSONBIN_API_KEY"] = self.jsonbin_api_key
            env["JSONBIN_JOBS_BIN_ID"] = self.jsonbin_jobs_bin_id
        return env

    def runner_argv(self) -> List[str]:
        if self.runner_command:
            return list(self.runner_command)
        return [sys.executable, "-m", "worker.runner"]
