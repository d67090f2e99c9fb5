import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set

from config.settings import Strategy


STOP_LOSS_REASON = "Stop loss triggered"
PROFIT_TARGET_REASON = "Profit threshold reached"
MAX_HOLD_REASON = "Max hold time reached"
STRATEGY_NOT_FOUND_REASON = "Strategy not found"


def partial_sell_reason(rung: float) -> str:
    return f"Partial sell at {rung:g}% profit"


class PositionStatus(Enum):
    PENDING = 'PENDING'
    ACTIVE = 'ACTIVE'
    CLOSING = 'CLOSING'
    CLOSED = 'CLOSED'
    FAILED = 'FAILED'

    @property
    def is_open(self) -> bool:
        return self in (PositionStatus.ACTIVE, PositionStatus.CLOSING)


@dataclass
class TradePosition:
    id: str
    asset_id: str
    strategy: str
    entry_amount: float
    entry_token_quantity: float
    entry_price: float
    entry_time: float
    symbol: str = ''
    token_quantity: float = 0.0
    current_price: Optional[float] = None
    current_value: Optional[float] = None
    pnl_percent: Optional[float] = None
    realized_amount: float = 0.0
    fees_paid: float = 0.0
    status: PositionStatus = PositionStatus.PENDING
    exit_price: Optional[float] = None
    exit_time: Optional[float] = None
    exit_reason: Optional[str] = None
    pending_exit_reason: Optional[str] = None
    exit_attempts: int = 0
    fired_ladder_rungs: Set[float] = field(default_factory=set)
    last_error: Optional[str] = None

    @property
    def realized_pnl(self) -> Optional[float]:
        """Quote-currency profit once the position is fully closed."""
        if self.status is not PositionStatus.CLOSED:
            return None
        return self.realized_amount - self.entry_amount

    def mark(self, quote_out: float) -> None:
        """Revalue the remaining tokens at ``quote_out`` total proceeds."""
        self.current_value = quote_out + self.realized_amount
        if self.token_quantity > 0:
            self.current_price = quote_out / self.token_quantity
        if self.entry_amount > 0:
            self.pnl_percent = (self.current_value - self.entry_amount) / self.entry_amount * 100.0

    def snapshot(self) -> 'TradePosition':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'asset_id': self.asset_id,
            'symbol': self.symbol,
            'strategy': self.strategy,
            'entry_amount': self.entry_amount,
            'entry_token_quantity': self.entry_token_quantity,
            'token_quantity': self.token_quantity,
            'entry_price': self.entry_price,
            'entry_time': self.entry_time,
            'current_price': self.current_price,
            'current_value': self.current_value,
            'pnl_percent': self.pnl_percent,
            'realized_amount': self.realized_amount,
            'fees_paid': self.fees_paid,
            'status': self.status.value,
            'exit_price': self.exit_price,
            'exit_time': self.exit_time,
            'exit_reason': self.exit_reason,
            'pending_exit_reason': self.pending_exit_reason,
            'exit_attempts': self.exit_attempts,
            'fired_ladder_rungs': sorted(self.fired_ladder_rungs),
            'last_error': self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradePosition':
        return cls(
            id=str(data['id']),
            asset_id=str(data['asset_id']),
            symbol=str(data.get('symbol') or ''),
            strategy=str(data['strategy']),
            entry_amount=float(data['entry_amount']),
            entry_token_quantity=float(data['entry_token_quantity']),
            token_quantity=float(data.get('token_quantity', data['entry_token_quantity'])),
            entry_price=float(data['entry_price']),
            entry_time=float(data['entry_time']),
            current_price=data.get('current_price'),
            current_value=data.get('current_value'),
            pnl_percent=data.get('pnl_percent'),
            realized_amount=float(data.get('realized_amount', 0.0)),
            fees_paid=float(data.get('fees_paid', 0.0)),
            status=PositionStatus(data.get('status', PositionStatus.ACTIVE.value)),
            exit_price=data.get('exit_price'),
            exit_time=data.get('exit_time'),
            exit_reason=data.get('exit_reason'),
            pending_exit_reason=data.get('pending_exit_reason'),
            exit_attempts=int(data.get('exit_attempts', 0)),
            fired_ladder_rungs={float(r) for r in data.get('fired_ladder_rungs', [])},
            last_error=data.get('last_error'),
        )


@dataclass(frozen=True)
class ExitDecision:
    reason: str
    rung: Optional[float] = None

    @property
    def partial(self) -> bool:
        return self.rung is not None


def evaluate_exit(position: TradePosition, strategy: Optional[Strategy], now: float,
                  enable_stop_losses: bool = True, enable_profit_taking: bool = True) -> Optional[ExitDecision]:
    """First matching exit cause in priority order, or None to keep holding."""
    if strategy is None:
        return ExitDecision(STRATEGY_NOT_FOUND_REASON)

    pnl = position.pnl_percent
    if pnl is not None:
        if enable_stop_losses and pnl <= -strategy.stop_loss_threshold:
            return ExitDecision(STOP_LOSS_REASON)
        if enable_profit_taking and pnl >= strategy.sell_threshold:
            return ExitDecision(PROFIT_TARGET_REASON)

    if now - position.entry_time > strategy.max_hold_duration_s:
        return ExitDecision(MAX_HOLD_REASON)

    if pnl is not None and strategy.enable_partial_sells:
        for rung in strategy.partial_sell_ladder:
            if rung in position.fired_ladder_rungs:
                continue
            if pnl >= rung:
                return ExitDecision(partial_sell_reason(rung), rung=rung)
            # Ascending ladder: no larger rung can qualify.
            break

    return None
