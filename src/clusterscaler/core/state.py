#!/usr/bin/env python3
"""
In-memory state carried between cluster scaling passes
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class ScalingState:
    """Failure counter and last scaling event, reset only by a restart"""

    node_failure_count: int = 0
    last_scaling_event: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_failure_count": self.node_failure_count,
            "last_scaling_event": self.last_scaling_event.isoformat() if self.last_scaling_event else None
        }
