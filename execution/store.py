"""JSON-file persistence for test cases, test cycles and execution runs."""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

log = logging.getLogger(__name__)

_COLLECTIONS = ("test_cases", "test_cycles", "runs")


class JsonFileStore:
    """Stores each collection as ``<data_dir>/<collection>.json``.

    Writes go through a temporary file that is then moved into place, and a
    file that no longer parses is moved aside as ``*.corrupted.bak`` so the
    store keeps working with an empty collection.
    """

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    def _path(self, collection: str) -> Path:
        if collection not in _COLLECTIONS:
            raise ValueError(f"unknown collection: {collection}")
        return self.data_dir / f"{collection}.json"

    def _load(self, collection: str) -> Dict[str, Any]:
        path = self._path(collection)
        try:
            if not path.exists():
                return {}
            content = path.read_text(encoding="utf-8").strip()
            if not content:
                return {}
            data = json.loads(content)
        except (json.JSONDecodeError, ValueError) as e:
            log.error("%s JSON parsing error: %s", path, e)
            backup_file = path.with_name(path.name + ".corrupted.bak")
            try:
                shutil.move(str(path), str(backup_file))
                log.info("Corrupted store file backed up to: %s", backup_file)
            except OSError as backup_error:
                log.error("Failed to backup corrupted file: %s", backup_error)
            return {}
        if not isinstance(data, dict):
            log.error("%s does not contain a JSON object; ignoring it", path)
            return {}
        return data

    def _save(self, collection: str, data: Mapping[str, Any]) -> None:
        path = self._path(collection)
        temp_file = path.with_name(path.name + ".tmp")
        try:
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2, default=str)
            os.replace(temp_file, path)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise

    # test cases / cycles ------------------------------------------------

    def save_test_case(self, test_case: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(test_case)
        if record.get("id") is None:
            raise ValueError("test case requires an id")
        with self._lock:
            cases = self._load("test_cases")
            cases[str(record["id"])] = record
            self._save("test_cases", cases)
        return record

    def get_test_case(self, test_case_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load("test_cases").get(str(test_case_id))

    def save_test_cycle(self, cycle: Mapping[str, Any]) -> Dict[str, Any]:
        record = dict(cycle)
        if record.get("id") is None:
            raise ValueError("test cycle requires an id")
        with self._lock:
            cycles = self._load("test_cycles")
            cycles[str(record["id"])] = record
            self._save("test_cycles", cycles)
        return record

    def get_test_cycle(self, cycle_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load("test_cycles").get(str(cycle_id))

    def cycle_test_data(self, cycle_id: Any) -> Dict[str, Any]:
        """Return the ``testData`` of a cycle, parsing it when stored as text."""

        cycle = self.get_test_cycle(cycle_id) if cycle_id is not None else None
        if not cycle:
            return {}
        data = cycle.get("testData")
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError:
                log.warning("Test cycle %s has malformed testData", cycle_id)
                return {}
        return dict(data) if isinstance(data, Mapping) else {}

    # runs ---------------------------------------------------------------

    def record_run(
        self,
        test_case_id: Any,
        execution_id: str,
        status: str,
        *,
        notes: str = "",
        report: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        record = {
            "executionId": execution_id,
            "testCaseId": test_case_id,
            "status": status,
            "notes": notes,
            "report": dict(report) if report else None,
            "recordedAt": time.time(),
        }
        with self._lock:
            runs = self._load("runs")
            runs.setdefault(str(test_case_id), []).append(record)
            self._save("runs", runs)
        log.info("Recorded %s run %s for test case %s", status, execution_id, test_case_id)
        return record

    def runs_for(self, test_case_id: Any) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load("runs").get(str(test_case_id), []))
