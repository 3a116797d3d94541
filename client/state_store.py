from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from services.canonical import utc_iso8601_z_now

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


@dataclass
class WizardState:
    """Everything needed to resume a wizard after a restart."""

    name: str
    step: int = 0
    request_id: Optional[str] = None
    draft_id: Optional[str] = None
    evidence_id: Optional[str] = None
    declaration: dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "step": self.step,
            "request_id": self.request_id,
            "draft_id": self.draft_id,
            "evidence_id": self.evidence_id,
            "declaration": dict(self.declaration),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WizardState":
        return cls(
            name=str(data["name"]),
            step=int(data.get("step") or 0),
            request_id=data.get("request_id"),
            draft_id=data.get("draft_id"),
            evidence_id=data.get("evidence_id"),
            declaration=dict(data.get("declaration") or {}),
            updated_at=data.get("updated_at"),
        )


def _check_name(name: str) -> str:
    if not _NAME_RE.match(name or ""):
        raise ValueError(f"invalid wizard name: {name!r}")
    return name


class WizardStateStore(ABC):
    @abstractmethod
    def load(self, name: str) -> Optional[WizardState]: ...

    @abstractmethod
    def save(self, state: WizardState) -> None: ...

    @abstractmethod
    def clear(self, name: str) -> None: ...


class MemoryWizardStateStore(WizardStateStore):
    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> Optional[WizardState]:
        with self._lock:
            raw = self._states.get(_check_name(name))
        return WizardState.from_dict(raw) if raw else None

    def save(self, state: WizardState) -> None:
        state.updated_at = utc_iso8601_z_now()
        with self._lock:
            self._states[_check_name(state.name)] = state.to_dict()

    def clear(self, name: str) -> None:
        with self._lock:
            self._states.pop(_check_name(name), None)


class FileWizardStateStore(WizardStateStore):
    """One JSON file per wizard name, replaced atomically on save."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.directory / f"{_check_name(name)}.wizard.json"

    def load(self, name: str) -> Optional[WizardState]:
        path = self._path(name)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        return WizardState.from_dict(raw)

    def save(self, state: WizardState) -> None:
        state.updated_at = utc_iso8601_z_now()
        path = self._path(state.name)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".wizard-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state.to_dict(), fh, sort_keys=True, indent=2)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def clear(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)
