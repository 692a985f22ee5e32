# storage/jsonbin.py
from __future__ import annotations
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import requests

from orchestrator.errors import StoreError


class JsonBinBackend:
    """
    Job records kept remotely in one JSONBin.io bin:
    - The bin stores a dict of {job_id: record}
    - Writes are read-modify-write of the whole bin, serialized in-process.
      Only one orchestrator host may point at a bin.
    """

    def __init__(self, api_key: str, jobs_bin_id: str, timeout: float = 30):
        if not (api_key and jobs_bin_id):
            raise StoreError("JSONBIN_API_KEY and JSONBIN_JOBS_BIN_ID are required for the jsonbin store.")
        self.api_key = api_key
        self.jobs_bin_id = jobs_bin_id
        self.timeout = timeout
        self.base = "https://api.jsonbin.io/v3"
        self._lock = threading.Lock()

    def _headers(self) -> Dict[str, str]:
        return {"X-Master-Key": self.api_key, "Content-Type": "application/json"}

    def read_all(self, strict: bool = False) -> Dict[str, Any]:
        try:
            r = requests.get(f"{self.base}/b/{self.jobs_bin_id}/latest", headers=self._headers(), timeout=self.timeout)
            r.raise_for_status()
            rec = r.json().get("record")
        except (requests.RequestException, ValueError) as e:
            raise StoreError(f"JSONBin read failed: {e}") from e
        if isinstance(rec, dict):
            return rec
        if strict and rec is not None:
            raise StoreError("JSONBin jobs bin does not hold an object; refusing to overwrite it")
        return {}

    def write_all(self, records: Dict[str, Any]) -> None:
        try:
            r = requests.put(f"{self.base}/b/{self.jobs_bin_id}", headers=self._headers(), json=records, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            raise StoreError(f"JSONBin write failed: {e}") from e

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._lock:
            yield
