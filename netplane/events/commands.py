"""Commands sent to worker nodes after a port change is committed.

Commands are published to a dedicated Redis channel and consumed by the
worker agents, which plumb the instance side of the port.
"""
from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class WorkerCommandType(str, Enum):
    ATTACH_PORT = "attach_port"
    DETACH_PORT = "detach_port"
    UPDATE_PORT = "update_port"


@dataclass
class WorkerCommand:
    command_type: WorkerCommandType
    worker_node_id: str | None = None
    port_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> str:
        d = asdict(self)
        d["command_type"] = self.command_type.value
        return json.dumps(d)

    @classmethod
    def from_json(cls, data: str) -> WorkerCommand:
        d = json.loads(data)
        d["command_type"] = WorkerCommandType(d["command_type"])
        return cls(**d)
