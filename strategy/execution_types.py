from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Direction(Enum):
    BUY = 'BUY'
    SELL = 'SELL'


class ExecutionFailureReason(Enum):
    INSUFFICIENT_LIQUIDITY = 'INSUFFICIENT_LIQUIDITY'
    SLIPPAGE_EXCEEDED = 'SLIPPAGE_EXCEEDED'
    TIMEOUT = 'TIMEOUT'
    REJECTED = 'REJECTED'

    @classmethod
    def parse(cls, value: Any) -> 'ExecutionFailureReason':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.REJECTED


class ExecutionFailure(Exception):
    """A swap did not execute. The position state must not change."""

    def __init__(self, reason: ExecutionFailureReason, detail: str = ''):
        self.reason = ExecutionFailureReason.parse(reason)
        self.detail = detail
        message = f"Swap failed: {self.reason.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class SourceUnavailable(Exception):
    """Quoting is temporarily impossible for the asset."""

    def __init__(self, asset_id: str, reason: str = ''):
        self.asset_id = asset_id
        self.reason = reason
        super().__init__(f"Quote unavailable for {asset_id}: {reason}" if reason else
                         f"Quote unavailable for {asset_id}")


@dataclass(frozen=True)
class SwapResult:
    """Normalized swap acknowledgement across live and paper gateways."""

    amount_out: float
    fee_paid: float = 0.0
    execution_time_ms: float = 0.0
    tx_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'amount_out': self.amount_out,
            'fee_paid': self.fee_paid,
            'execution_time_ms': self.execution_time_ms,
            'tx_id': self.tx_id,
        }
