from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional


class ReloadState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTED = "snapshotted"
    WRITTEN = "written"
    RELOAD_ATTEMPTED = "reload_attempted"
    RESTART_ATTEMPTED = "restart_attempted"
    VALIDATED = "validated"
    ROLLED_BACK = "rolled_back"


@dataclass
class Transition:
    source: ReloadState
    target: ReloadState
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ApplyResult:
    target_path: Path
    state: ReloadState = ReloadState.IDLE
    transitions: List[Transition] = field(default_factory=list)
    # outcome of the single restart attempted after a rollback
    final_restart_ok: Optional[bool] = None

    @property
    def succeeded(self) -> bool:
        return self.state == ReloadState.VALIDATED

    @property
    def rolled_back(self) -> bool:
        return self.state == ReloadState.ROLLED_BACK

    @property
    def reason(self) -> str:
        return self.transitions[-1].reason if self.transitions else ""

    def to_dict(self) -> dict:
        return {
            "target_path": str(self.target_path),
            "state": self.state.value,
            "final_restart_ok": self.final_restart_ok,
            "transitions": [
                {
                    "from": t.source.value,
                    "to": t.target.value,
                    "reason": t.reason,
                    "at": t.at.isoformat(),
                }
                for t in self.transitions
            ],
        }
