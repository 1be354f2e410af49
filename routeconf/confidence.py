"""
Route confidence module for cl-route-confidence

Estimates the probability that a multi-hop route completes, scaled to
one million.

Two estimation paths:
1. Live probabilities: ask the node for each hop's success probability and
   fold them left-to-right as independent events.
2. Reputation fallback: when live queries are unsupported, resolve a
   confidence per forwarding edge from the reputation snapshot and
   multiply them together.

All arithmetic is exact integer arithmetic on the one-million scale so
long routes never accumulate floating point drift.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import ConfidenceQueryFailed, InvalidHopSet, InvalidParameter
from .reputation import (
    DEFAULT_CONFIDENCE,
    FULL_CONFIDENCE,
    Hop,
    ReputationSnapshot,
    clamp_confidence,
    hops_from_dicts,
)

BASIS_PROBABILITY = "probability"
BASIS_REPUTATION = "reputation"


# =============================================================================
# PER-HOP QUERY OUTCOME
# =============================================================================

class OutcomeStatus(Enum):
    """Result of asking the node for a single hop's success probability."""
    SUPPORTED = "supported"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbabilityOutcome:
    """
    Tagged outcome of a per-hop probability query.

    UNSUPPORTED is not an error: it tells the aggregator to use the
    reputation fallback instead.
    """
    status: OutcomeStatus
    confidence: int = 0
    error: Optional[BaseException] = None

    @classmethod
    def supported(cls, confidence: int) -> 'ProbabilityOutcome':
        return cls(OutcomeStatus.SUPPORTED, confidence=clamp_confidence(confidence))

    @classmethod
    def unsupported(cls) -> 'ProbabilityOutcome':
        return cls(OutcomeStatus.UNSUPPORTED)

    @classmethod
    def failed(cls, error: BaseException) -> 'ProbabilityOutcome':
        return cls(OutcomeStatus.FAILED, error=error)


# (from_node, to_node, amount_msat) -> ProbabilityOutcome
ProbabilityQuery = Callable[[str, str, int], ProbabilityOutcome]


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass(frozen=True)
class ForwardingEdge:
    """A directed channel traversal carrying the hop's forward amount."""
    channel_id: str
    from_node: str
    to_node: str
    forward_amount: int


@dataclass(frozen=True)
class ConfidenceResult:
    """Probability the whole route completes, out of one million."""
    confidence: int
    basis: str = BASIS_REPUTATION

    def to_dict(self) -> Dict[str, Any]:
        return {"confidence": self.confidence, "basis": self.basis}


@dataclass(frozen=True)
class RankedRoute:
    confidence: int
    basis: str
    hops: List[Hop]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": self.confidence,
            "basis": self.basis,
            "hops": [hop.to_dict() for hop in self.hops],
        }


# =============================================================================
# CORE ALGORITHM
# =============================================================================

def combine_confidence(running: int, hop_confidence: int) -> int:
    """
    Combine two independent probabilities on the one-million scale.

    Equivalent to round(running/1e6 * hop/1e6 * 1e6), rounding halves up.
    """
    product = running * hop_confidence
    return clamp_confidence((product + FULL_CONFIDENCE // 2) // FULL_CONFIDENCE)


def forwarding_edges(source_node: str, hops: Sequence[Hop]) -> List[ForwardingEdge]:
    """Edge i runs from the source (i=0) or hop i-1's node to hop i's node."""
    edges = []
    for i, hop in enumerate(hops):
        edges.append(ForwardingEdge(
            channel_id=hop.channel_id,
            from_node=source_node if i == 0 else hops[i - 1].to_node,
            to_node=hop.to_node,
            forward_amount=hop.forward_amount,
        ))
    return edges


def resolve_edge_confidence(edge: ForwardingEdge, reputation: ReputationSnapshot,
                            default_confidence: int = DEFAULT_CONFIDENCE) -> int:
    """
    Pick the most specific reputation that is predictive for this edge.

    The specific record is the peer-pair record if there is one, else the
    channel record. Below its min_relevant_amount the node's base
    confidence is used instead, even when that base is zero. The default
    only applies to nodes without a record, or without any specific
    record and base confidence.
    """
    record = reputation.get(edge.from_node)
    if record is None:
        return default_confidence

    specific = record.peer(edge.to_node) or record.channel(edge.channel_id)
    if specific is None:
        return record.base_confidence or default_confidence

    if edge.forward_amount < specific.min_relevant_amount:
        return record.base_confidence or 0

    return specific.confidence


def combine_reputation(confidences: Sequence[int]) -> int:
    """Multiply edge confidences and rescale by 1e6^(n-1), flooring."""
    total = 1
    for confidence in confidences:
        total *= confidence
    denominator = FULL_CONFIDENCE ** (len(confidences) - 1)
    return clamp_confidence(total // denominator)


def parse_confidence_param(name: str, value: Any) -> int:
    """Parse a confidence RPC parameter, which must be an int in [0, 1_000_000]."""
    if isinstance(value, bool):
        raise InvalidParameter(f"Expected integer {name}", {name: value})
    try:
        confidence = int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"Expected integer {name}", {name: value})
    if not 0 <= confidence <= FULL_CONFIDENCE:
        raise InvalidParameter(
            f"Expected {name} between 0 and {FULL_CONFIDENCE}", {name: confidence}
        )
    return confidence


def validate_hops(hops: Any) -> List[Hop]:
    if not isinstance(hops, (list, tuple)) or not hops:
        raise InvalidHopSet("Expected a non-empty list of hops to calculate routing odds")
    if not all(isinstance(hop, (dict, Hop)) for hop in hops):
        raise InvalidHopSet("Expected hops to be objects")

    parsed = hops_from_dicts(hops)
    for index, hop in enumerate(parsed):
        if not hop.is_complete():
            raise InvalidHopSet(
                "Expected hops with channels and destination nodes",
                {"index": index, "channel_id": hop.channel_id, "to_node": hop.to_node},
            )
    return parsed


def _fold_probabilities(edges: Sequence[ForwardingEdge],
                        per_hop_query: ProbabilityQuery) -> Optional[int]:
    """
    Fold live per-hop probabilities, or return None if unsupported.

    Queries are issued strictly in hop order; the first UNSUPPORTED
    abandons the whole fold so no partial value escapes.
    """
    running = FULL_CONFIDENCE
    for edge in edges:
        try:
            outcome = per_hop_query(edge.from_node, edge.to_node, edge.forward_amount)
        except Exception as e:
            raise ConfidenceQueryFailed(
                f"Probability query raised: {e}",
                {"from_node": edge.from_node, "to_node": edge.to_node},
            ) from e

        if outcome.status == OutcomeStatus.UNSUPPORTED:
            return None
        if outcome.status == OutcomeStatus.FAILED:
            raise ConfidenceQueryFailed(
                f"Probability query failed: {outcome.error}",
                {"from_node": edge.from_node, "to_node": edge.to_node},
            ) from outcome.error

        running = combine_confidence(running, outcome.confidence)
    return running


def estimate_route_confidence(source_node: str, hops: Sequence[Any],
                              reputation: ReputationSnapshot,
                              per_hop_query: Optional[ProbabilityQuery] = None,
                              default_confidence: int = DEFAULT_CONFIDENCE) -> ConfidenceResult:
    """
    Estimate the odds of successfully routing over `hops` from `source_node`.

    Args:
        source_node: Public key the route starts from
        hops: Ordered hops (Hop objects or RPC-style dicts)
        reputation: Reputation snapshot used by the fallback path
        per_hop_query: Optional live probability query
        default_confidence: Odds for forwarding nodes without reputation

    Returns:
        ConfidenceResult with confidence out of one million

    Raises:
        InvalidHopSet: empty hop list, incomplete hop, or no source node
        ConfidenceQueryFailed: live query failed for a reason other than
            being unsupported
    """
    parsed = validate_hops(hops)
    if not source_node:
        raise InvalidHopSet("Expected a source node to start the route from")

    edges = forwarding_edges(source_node, parsed)

    if per_hop_query is not None:
        confidence = _fold_probabilities(edges, per_hop_query)
        if confidence is not None:
            return ConfidenceResult(confidence=confidence, basis=BASIS_PROBABILITY)

    odds = [resolve_edge_confidence(edge, reputation, default_confidence) for edge in edges]
    return ConfidenceResult(confidence=combine_reputation(odds), basis=BASIS_REPUTATION)


# =============================================================================
# ESTIMATOR
# =============================================================================

class RouteConfidenceEstimator:
    """
    Scores and ranks candidate routes for a payment retry loop.

    Usage:
        estimator = RouteConfidenceEstimator(plugin, config.snapshot())
        result = estimator.estimate(our_id, hops, snapshot, bridge.query_probability)
        ranked = estimator.rank_routes(our_id, routes, snapshot, bridge.query_probability)
    """

    def __init__(self, plugin=None, config=None):
        self.plugin = plugin
        self.config = config

    def _log(self, message: str, level: str = "debug") -> None:
        if self.plugin:
            self.plugin.log(f"CONFIDENCE: {message}", level=level)

    @property
    def default_confidence(self) -> int:
        if self.config is None:
            return DEFAULT_CONFIDENCE
        return self.config.default_confidence

    def estimate(self, source_node: str, hops: Sequence[Any], reputation: ReputationSnapshot,
                 per_hop_query: Optional[ProbabilityQuery] = None) -> ConfidenceResult:
        result = estimate_route_confidence(
            source_node, hops, reputation, per_hop_query, self.default_confidence
        )
        if per_hop_query is not None and result.basis == BASIS_REPUTATION:
            self._log("Live probability query unsupported, used reputation fallback")
        self._log(f"Route of {len(hops)} hops scored {result.confidence} ({result.basis})")
        return result

    def rank_routes(self, source_node: str, routes: Sequence[Sequence[Any]],
                    reputation: ReputationSnapshot,
                    per_hop_query: Optional[ProbabilityQuery] = None,
                    min_confidence: Optional[int] = None) -> List[RankedRoute]:
        """
        Score every candidate route and order them best first.

        Routes scoring below min_confidence are dropped. An invalid min_confidence
        raises InvalidParameter before any route is scored. Once the live
        query reports unsupported, remaining routes skip straight to the
        reputation path.
        """
        if min_confidence is None:
            min_confidence = self.config.min_route_confidence if self.config else 0
        else:
            min_confidence = parse_confidence_param("min_confidence", min_confidence)

        ranked = []
        for route in routes:
            hops = validate_hops(route)
            result = estimate_route_confidence(
                source_node, hops, reputation, per_hop_query, self.default_confidence
            )
            if per_hop_query is not None and result.basis == BASIS_REPUTATION:
                self._log("Live probability query unsupported, ranking by reputation")
                per_hop_query = None

            if result.confidence < min_confidence:
                self._log(f"Dropping route scored {result.confidence} < {min_confidence}")
                continue
            ranked.append(RankedRoute(confidence=result.confidence, basis=result.basis, hops=hops))

        # sorted() is stable, ties keep discovery order
        return sorted(ranked, key=lambda r: -r.confidence)
