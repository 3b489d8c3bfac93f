"""
cl-treasury-ops package

This package contains the core modules for the Treasury Operations plugin:
- node: Channel snapshot provider and action executor over lightningd RPC
- liquidity_health: Channel health classification and recommended actions
- channel_metrics: Per-channel ROI/payback and per-peer scoring
- fee_engine: Health-driven dynamic fee targets
- rotation: Closure candidate scoring and execution
- capital_guardrails: Pre-open capital policy enforcement
- loss_cap: Daily rebalance spend circuit breaker
- rebalancer: Circular rebalance planner/executor
- ledger: Execution record state machine
- scheduler: Single-flight autonomous rebalance loop
- alerts: Operator-facing signals
- config: Configuration and constants
- database: SQLite storage layer
"""

from .config import Config, ConfigSnapshot
from .database import Database
from .errors import (
    TreasuryError,
    ConfigurationError,
    GuardrailViolation,
    LossCapExceeded,
    ViabilityError,
    ExternalCallFailure,
    InvalidTransition,
)
from .node import NodeGateway, ChannelSnapshot
from .ledger import ExecutionLedger, ActionKind, ExecutionStatus
from .policies import PolicyStore, CapitalPolicy, FeePolicy
from .liquidity_health import LiquidityHealthClassifier, HealthClass, RecommendedAction
from .channel_metrics import ChannelMetricsAggregator
from .fee_engine import DynamicFeeEngine
from .rotation import RotationManager
from .capital_guardrails import CapitalGuardrails
from .loss_cap import DailyLossCapGuard
from .rebalancer import CircularRebalancer
from .scheduler import RebalanceScheduler
from .expansion import ExpansionManager
from .reconcile import LedgerReconciler
from .alerts import AlertsAggregator
from .summary import TreasurySummary

__all__ = [
    'Config',
    'ConfigSnapshot',
    'Database',
    'TreasuryError',
    'ConfigurationError',
    'GuardrailViolation',
    'LossCapExceeded',
    'ViabilityError',
    'ExternalCallFailure',
    'InvalidTransition',
    'NodeGateway',
    'ChannelSnapshot',
    'ExecutionLedger',
    'ActionKind',
    'ExecutionStatus',
    'PolicyStore',
    'CapitalPolicy',
    'FeePolicy',
    'LiquidityHealthClassifier',
    'HealthClass',
    'RecommendedAction',
    'ChannelMetricsAggregator',
    'DynamicFeeEngine',
    'RotationManager',
    'CapitalGuardrails',
    'DailyLossCapGuard',
    'CircularRebalancer',
    'RebalanceScheduler',
    'ExpansionManager',
    'LedgerReconciler',
    'AlertsAggregator',
    'TreasurySummary',
]
