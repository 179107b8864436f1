"""Data models for cross-venue arbitrage."""
import time
from dataclasses import dataclass, field, asdict, replace
from typing import Optional, Tuple, Dict, Any
from datetime import datetime
from enum import Enum


class OpportunityStatus(Enum):
    """Opportunity lifecycle states."""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OpportunityStatus.COMPLETED, OpportunityStatus.FAILED)


class RiskLevel(Enum):
    """Heuristic risk annotation."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Token:
    """An ERC20-style token. Two tokens are equal when their addresses match."""
    address: str
    symbol: str = field(default="", compare=False)
    decimals: int = field(default=18, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "address", self.address.lower())

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "symbol": self.symbol, "decimals": self.decimals}


@dataclass
class Venue:
    """A DEX or other liquidity source."""
    id: str
    name: str
    active: bool = True


@dataclass(frozen=True)
class TokenPair:
    """Unordered token pair, always held in canonical (address-sorted) order."""
    token_a: Token
    token_b: Token

    @classmethod
    def of(cls, token_a: Token, token_b: Token) -> "TokenPair":
        """Build the canonical form of a pair regardless of argument order."""
        if token_a == token_b:
            raise ValueError(f"Cannot pair token {token_a.address} with itself")
        if token_b.address < token_a.address:
            token_a, token_b = token_b, token_a
        return cls(token_a, token_b)

    @property
    def key(self) -> str:
        return f"{self.token_a.address}:{self.token_b.address}"

    @property
    def tokens(self) -> Tuple[Token, Token]:
        return self.token_a, self.token_b

    def __str__(self) -> str:
        return f"{self.token_a.symbol or self.token_a.address}/{self.token_b.symbol or self.token_b.address}"


@dataclass(frozen=True)
class PricePoint:
    """A single quote: price of token_a in token_b units, as seen on one venue."""
    price: float
    timestamp: float
    venue_id: str


@dataclass
class ArbitrageOpportunity:
    """A detected cross-venue price discrepancy."""
    id: str
    token_in: Token
    token_out: Token
    source_venue: str
    target_venue: str
    profit_percentage: float
    estimated_profit: float
    gas_estimate: float
    trade_size: float
    timestamp: float = field(default_factory=time.time)
    status: OpportunityStatus = OpportunityStatus.PENDING
    confidence_score: Optional[float] = None
    risk_level: Optional[RiskLevel] = None
    status_reason: str = ""
    attempts: int = 0
    finished_at: Optional[float] = None
    tx_ref: Optional[str] = None

    @property
    def natural_key(self) -> Tuple[str, str, str, str]:
        """Identity used to merge duplicate live opportunities."""
        return (
            self.token_in.address,
            self.token_out.address,
            self.source_venue,
            self.target_venue,
        )

    @property
    def detected_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp)

    def copy(self) -> "ArbitrageOpportunity":
        return replace(self)

    def __str__(self) -> str:
        return (
            f"{self.token_in.symbol}/{self.token_out.symbol} "
            f"{self.source_venue} → {self.target_venue} | "
            f"Profit: {self.profit_percentage:.4f}% ({self.estimated_profit:.6f})"
        )


@dataclass(frozen=True)
class FundingQuote:
    """Cost of borrowing `amount` of `token` from one funding provider."""
    provider: str
    token: Token
    amount: float
    fee_percentage: float
    fee_amount: float
    total_required: float


@dataclass(frozen=True)
class ProfitabilityCheck:
    """Expected profit after subtracting the funding fee."""
    is_profitable: bool
    net_profit: float
    provider: str = ""
    fee_amount: float = 0.0


@dataclass
class FundingOptions:
    """Parameters for executing a flash-funded borrow."""
    provider: str
    token: Token
    amount: float
    recipient: str
    callback_data: str = "0x"
    referral_code: int = 0


@dataclass
class FundingResult:
    """Outcome of a funding provider execution."""
    success: bool
    fee: Optional[float] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SettlementResult:
    """Response of the settlement executor."""
    success: bool
    tx_ref: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ExecutionResult:
    """Final outcome of executing one opportunity."""
    opportunity_id: str
    success: bool
    status: OpportunityStatus
    tx_ref: Optional[str] = None
    error: str = ""
    funding_quote: Optional[FundingQuote] = None
    attempts: int = 1
    executed_at: float = field(default_factory=time.time)


@dataclass
class MonitoringStats:
    """Read-only snapshot of coordinator state."""
    is_running: bool
    pair_count: int
    venue_count: int
    pending_count: int
    requests_remaining: int
    executing_count: int = 0
    cycle_count: int = 0
    scan_count: int = 0
    last_scan_at: Optional[float] = None
    auto_execution_halted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
