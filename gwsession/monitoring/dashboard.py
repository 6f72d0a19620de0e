from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class StatusSnapshot:
    gateway: str
    gateway_up: bool | None
    gateway_status: str
    monitor: dict[str, Any] = field(default_factory=dict)
    session: dict[str, Any] | None = None
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.session is None:
            payload.pop("session")
        return payload


class StatusWriter:
    """JSON status file for health checks; readers never see a half-written file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def write(self, snapshot: StatusSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(snapshot.to_dict(), indent=2, default=str), encoding="utf-8")
        tmp_path.replace(self.path)

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable status file %s: %s", self.path, exc)
            return None
