"""
cl-route-confidence modules package

This package contains the core modules for the Route Confidence plugin:
- reputation: Read-only reputation snapshot and hop types
- confidence: Route success probability estimation and ranking
- exclusions: Failure-to-exclusion mapping and accumulated exclusion sets
- lightning_bridge: lightningd RPC adapter for reputation/probability queries
- config: Configuration and constants
- errors: Engine error taxonomy
"""

from .errors import RouteEngineError
from .reputation import Hop, ReputationRecord, ReputationSnapshot
from .confidence import (
    ConfidenceResult,
    ProbabilityOutcome,
    RouteConfidenceEstimator,
    estimate_route_confidence,
)
from .exclusions import (
    ExclusionDirective,
    ExclusionSet,
    FailureReason,
    FailureReport,
    RuleKind,
    derive_exclusions,
)
from .config import Config

__all__ = [
    'RouteEngineError',
    'Hop',
    'ReputationRecord',
    'ReputationSnapshot',
    'ConfidenceResult',
    'ProbabilityOutcome',
    'RouteConfidenceEstimator',
    'estimate_route_confidence',
    'ExclusionDirective',
    'ExclusionSet',
    'FailureReason',
    'FailureReport',
    'RuleKind',
    'derive_exclusions',
    'Config',
]
