# sinks.py
from __future__ import annotations

import json
import threading
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from pydantic import BaseModel, Field

from .model import JobInstance, StepOutcome
from .ui.console import get_console

# -------------------- Records --------------------


def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class StepRecord(BaseModel):
    name: str
    id: Optional[str] = None
    status: str
    reason: str = ""
    outputs: Dict[str, str] = Field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_outcome(cls, outcome: StepOutcome) -> StepRecord:
        return cls(
            name=outcome.name,
            id=outcome.id,
            status=outcome.status.value,
            reason=outcome.reason,
            outputs=outcome.outputs,
            start_time=_ts(outcome.start_time),
            end_time=_ts(outcome.end_time),
        )


class JobRecord(BaseModel):
    """Per-instance record handed to sinks once the instance is terminal."""
    instance_id: str
    template: str
    label: str = ""
    display_name: str = ""
    status: str
    cause: Optional[str] = None
    target: str = "local"
    outputs: Dict[str, str] = Field(default_factory=dict)
    step_outcomes: List[StepRecord] = Field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_instance(cls, inst: JobInstance) -> JobRecord:
        return cls(
            instance_id=inst.instance_id,
            template=inst.name,
            label=inst.label,
            display_name=inst.display,
            status=inst.status.value,
            cause=inst.cause,
            target=inst.target,
            outputs=inst.outputs,
            step_outcomes=[StepRecord.from_outcome(o) for o in inst.step_outcomes],
            start_time=_ts(inst.start_time),
            end_time=_ts(inst.end_time),
        )


class RunReport(BaseModel):
    outcome: str  # succeeded | failed | aborted | configuration_error
    exit_code: int
    records: List[JobRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record(self, instance_id: str) -> JobRecord:
        for r in self.records:
            if r.instance_id == instance_id:
                return r
        raise KeyError(instance_id)

    def statuses(self) -> Dict[str, str]:
        return {r.instance_id: r.status for r in self.records}

    def not_succeeded(self) -> List[JobRecord]:
        return [r for r in self.records if r.status != "succeeded"]


# -------------------- Sinks --------------------

class SinkError(Exception):
    """Raised when a sink cannot accept a record."""
    pass


class CollectingSink:
    """Keeps records in memory."""

    def __init__(self):
        self.records: List[JobRecord] = []
        self._lock = threading.Lock()

    def emit(self, record: JobRecord) -> None:
        with self._lock:
            self.records.append(record)


class ConsoleSink:
    """Prints one line per terminal instance."""

    def emit(self, record: JobRecord) -> None:
        line = f"RECORD: {record.instance_id} -> {record.status}"
        if record.cause:
            line += f" ({record.cause})"
        get_console().print_debug(line)


class JsonlSink:
    """Appends one JSON document per record to a file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def emit(self, record: JobRecord) -> None:
        line = record.model_dump_json()
        with self._lock, self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


class HttpSink:
    """POSTs each record as JSON to <base_url>/records."""

    def __init__(self, base_url: str, *, run_id: Optional[str] = None, timeout: float = 10.0):
        # Ensure base_url doesn't end with /
        self.base_url = base_url.rstrip("/")
        self.run_id = run_id
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise SinkError(f"sink request failed: {e.code} {e.reason}. {error_body}")
        except urllib.error.URLError as e:
            raise SinkError(f"Network error: {e.reason}")
        except json.JSONDecodeError as e:
            raise SinkError(f"Invalid JSON response: {e}")

    def emit(self, record: JobRecord) -> None:
        payload: Dict[str, Any] = json.loads(record.model_dump_json())
        if self.run_id:
            payload["run_id"] = self.run_id
        self._request("POST", "/records", payload)
