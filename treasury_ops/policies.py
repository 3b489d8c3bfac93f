"""
Policy module for cl-treasury-ops

CapitalPolicy and FeePolicy are singleton rows read on every decision.
They are mutated only through the explicit update operations here.
"""

from dataclasses import dataclass, asdict, fields
from typing import Dict, Optional, Any

from .database import CAPITAL_POLICY_COLUMNS


@dataclass
class CapitalPolicy:
    min_onchain_reserve: int = 300_000
    max_deploy_ratio_ppm: int = 600_000
    max_pending_opens: int = 1
    max_peer_capacity: int = 300_000
    peer_cooldown_minutes: int = 720
    max_expansions_per_day: int = 3
    max_daily_deploy: int = 400_000
    max_daily_loss: int = 5_000
    updated_at: Optional[int] = None
    last_applied_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'CapitalPolicy':
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in row.items() if k in names})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FeePolicy:
    base_fee_msat: int = 0
    fee_rate_ppm: int = 0  # 0 = not configured
    updated_at: Optional[int] = None
    last_applied_at: Optional[int] = None

    @property
    def is_configured(self) -> bool:
        return self.fee_rate_ppm > 0

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["configured"] = self.is_configured
        return result


def _non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a non-negative integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a non-negative integer")
    if number < 0 or (isinstance(value, float) and value != number):
        raise ValueError(f"{name} must be a non-negative integer")
    return number


class PolicyStore:
    """Reads and updates the policy singletons."""

    def __init__(self, database):
        self.database = database

    def get_capital_policy(self) -> CapitalPolicy:
        """Current capital policy; the default row is created on first read."""
        row = self.database.get_capital_policy()
        if row is None:
            defaults = CapitalPolicy()
            self.database.insert_capital_policy(
                {column: getattr(defaults, column) for column in CAPITAL_POLICY_COLUMNS}
            )
            row = self.database.get_capital_policy()
        return CapitalPolicy.from_row(row)

    def update_capital_policy(self, **updates) -> CapitalPolicy:
        """Partial update. Unknown fields and negative values raise ValueError."""
        clean = {}
        for name, value in updates.items():
            if value is None:
                continue
            if name not in CAPITAL_POLICY_COLUMNS:
                raise ValueError(f"Unknown capital policy field: {name}")
            clean[name] = _non_negative_int(name, value)
        if 'max_deploy_ratio_ppm' in clean and clean['max_deploy_ratio_ppm'] > 1_000_000:
            raise ValueError("max_deploy_ratio_ppm must be <= 1000000")

        self.get_capital_policy()  # ensure the row exists
        self.database.update_capital_policy(clean)
        return self.get_capital_policy()

    def mark_capital_policy_applied(self) -> CapitalPolicy:
        self.get_capital_policy()
        self.database.mark_capital_policy_applied()
        return self.get_capital_policy()

    def get_fee_policy(self) -> FeePolicy:
        row = self.database.get_fee_policy()
        if row is None:
            return FeePolicy()
        return FeePolicy(
            base_fee_msat=row['base_fee_msat'],
            fee_rate_ppm=row['fee_rate_ppm'],
            updated_at=row['updated_at'],
            last_applied_at=row['last_applied_at'],
        )

    def set_fee_policy(self, base_fee_msat: Optional[int] = None,
                       fee_rate_ppm: Optional[int] = None) -> FeePolicy:
        current = self.get_fee_policy()
        base = current.base_fee_msat if base_fee_msat is None else _non_negative_int('base_fee_msat', base_fee_msat)
        rate = current.fee_rate_ppm if fee_rate_ppm is None else _non_negative_int('fee_rate_ppm', fee_rate_ppm)
        self.database.set_fee_policy(base, rate)
        return self.get_fee_policy()

    def mark_fee_policy_applied(self) -> FeePolicy:
        self.database.mark_fee_policy_applied()
        return self.get_fee_policy()
