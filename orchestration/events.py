import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


ASSET_ADDED = 'assetAdded'
ASSET_REMOVED = 'assetRemoved'
STATUS_UPDATE = 'statusUpdate'
THRESHOLD_CROSSED = 'thresholdCrossed'
POSITION_OPENED = 'positionOpened'
POSITION_CLOSED = 'positionClosed'
POSITION_SKIPPED = 'positionSkipped'
POSITION_FAILED = 'positionFailed'
PARTIAL_EXIT = 'partialExit'
BUY_FAILED = 'buyFailed'
RISK_ALERT = 'riskAlert'


@dataclass(frozen=True)
class Event:
    topic: str
    payload: Dict[str, Any]
    asset_id: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.topic,
            'asset_id': self.asset_id,
            'timestamp': self.timestamp,
            'payload': self.payload,
        }
