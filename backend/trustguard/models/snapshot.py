from dataclasses import dataclass
from datetime import datetime
from pathlib import Path


@dataclass
class ConfigurationSnapshot:
    """Last-known-good copy of a tracked file."""

    target: Path
    location: Path
    content: bytes
    taken_at: datetime
