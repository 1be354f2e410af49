"""
Tests for route confidence estimation.

Tests:
- Reputation fallback edge resolution and exact multiplication
- Live per-hop probability folding and capability fallback
- Hop validation errors
- Route ranking
"""

import pytest
from unittest.mock import MagicMock

from routeconf.confidence import (
    BASIS_PROBABILITY,
    BASIS_REPUTATION,
    ProbabilityOutcome,
    RouteConfidenceEstimator,
    combine_confidence,
    combine_reputation,
    estimate_route_confidence,
    forwarding_edges,
    parse_confidence_param,
)
from routeconf.config import Config
from routeconf.errors import ConfidenceQueryFailed, InvalidHopSet, InvalidParameter
from routeconf.reputation import (
    ChannelReputation,
    Hop,
    PeerReputation,
    ReputationRecord,
    ReputationSnapshot,
)


def _snapshot(*records):
    return ReputationSnapshot(records)


class TestForwardingEdges:
    """Test construction of forwarding edges from hops."""

    def test_first_edge_starts_at_source(self, sample_peer_ids):
        """Edge 0 runs from the source, later edges from the previous hop."""
        hops = [
            Hop("1x1x1", sample_peer_ids[1], 2000),
            Hop("2x2x2", sample_peer_ids[2], 1000),
        ]

        edges = forwarding_edges(sample_peer_ids[0], hops)

        assert [(e.from_node, e.to_node) for e in edges] == [
            (sample_peer_ids[0], sample_peer_ids[1]),
            (sample_peer_ids[1], sample_peer_ids[2]),
        ]
        assert [e.forward_amount for e in edges] == [2000, 1000]
        assert [e.channel_id for e in edges] == ["1x1x1", "2x2x2"]


class TestReputationFallback:
    """Test the reputation-only estimation path."""

    def test_unknown_node_gets_default_odds(self, sample_peer_ids):
        """A forwarding node with no reputation record scores 95%."""
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot())

        assert result.confidence == 950_000
        assert result.basis == BASIS_REPUTATION

    def test_node_without_base_confidence_gets_default_odds(self, sample_peer_ids):
        """A record with no specific matches and no base confidence scores 95%."""
        record = ReputationRecord(node=sample_peer_ids[0])
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 950_000

    def test_two_hops_multiply_exactly(self, sample_peer_ids):
        """500,000 and 800,000 combine to exactly 400,000."""
        snapshot = _snapshot(
            ReputationRecord(node=sample_peer_ids[0], base_confidence=500_000),
            ReputationRecord(node=sample_peer_ids[1], base_confidence=800_000),
        )
        hops = [
            Hop("1x1x1", sample_peer_ids[1], 1000),
            Hop("2x2x2", sample_peer_ids[2], 1000),
        ]

        result = estimate_route_confidence(sample_peer_ids[0], hops, snapshot)

        assert result.confidence == 400_000

    def test_peer_record_preferred(self, sample_peer_ids):
        """A relevant peer-pair record wins over channel and base odds."""
        record = ReputationRecord(
            node=sample_peer_ids[0],
            base_confidence=500_000,
            channels=(ChannelReputation("1x1x1", 600_000, 0),),
            peers=(PeerReputation(sample_peer_ids[1], 700_000, 0),),
        )
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 700_000

    def test_peer_below_threshold_uses_base(self, sample_peer_ids):
        """A peer record below its relevant amount yields to base odds, not the channel record."""
        record = ReputationRecord(
            node=sample_peer_ids[0],
            base_confidence=500_000,
            channels=(ChannelReputation("1x1x1", 600_000, 0),),
            peers=(PeerReputation(sample_peer_ids[1], 700_000, 5000),),
        )
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 500_000

    def test_base_confidence_used_when_records_below_threshold(self, sample_peer_ids):
        """Specific records are not predictive below their relevant amount."""
        record = ReputationRecord(
            node=sample_peer_ids[0],
            base_confidence=500_000,
            channels=(ChannelReputation("1x1x1", 600_000, 5000),),
        )
        hops = [Hop("1x1x1", sample_peer_ids[1], 4999)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 500_000

    def test_threshold_is_inclusive(self, sample_peer_ids):
        """A forward amount equal to the threshold uses the specific record."""
        record = ReputationRecord(
            node=sample_peer_ids[0],
            base_confidence=500_000,
            channels=(ChannelReputation("1x1x1", 600_000, 5000),),
        )
        hops = [Hop("1x1x1", sample_peer_ids[1], 5000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 600_000

    def test_zero_base_used_below_threshold(self, sample_peer_ids):
        """A node reported as never forwarding keeps zero odds below the threshold."""
        snapshot = ReputationSnapshot.from_rpc({"nodes": [{
            "node_id": sample_peer_ids[0],
            "confidence": 0,
            "channels": [{"short_channel_id": "1x1x1", "confidence": 900_000, "min_relevant_msat": 5000}],
        }]})
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, snapshot)

        assert result.confidence == 0

    def test_zero_base_without_specific_record_gets_default(self, sample_peer_ids):
        """Without any specific record a zero base carries no opinion."""
        record = ReputationRecord(node=sample_peer_ids[0], base_confidence=0)
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(sample_peer_ids[0], hops, _snapshot(record))

        assert result.confidence == 950_000

    def test_from_rpc_response(self, sample_peer_ids, two_hop_route, sample_reputation_response):
        """getroute hops and reputation RPC responses work end to end."""
        snapshot = ReputationSnapshot.from_rpc(sample_reputation_response)

        result = estimate_route_confidence(sample_peer_ids[0], two_hop_route, snapshot)

        # 500,000 (base of source) * 700,000 (peer record of hop 1)
        assert result.confidence == 350_000

    def test_custom_default_confidence(self, sample_peer_ids):
        """The default odds for unknown nodes can be configured."""
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        result = estimate_route_confidence(
            sample_peer_ids[0], hops, _snapshot(), default_confidence=800_000
        )

        assert result.confidence == 800_000


class TestExactArithmetic:
    """Test exact integer combination on the one-million scale."""

    def test_long_route_matches_integer_reference(self):
        """Fifty near-certain hops combine without float drift."""
        odds = [999_999] * 50

        expected = 999_999 ** 50 // 1_000_000 ** 49

        assert combine_reputation(odds) == expected

    def test_combination_stays_in_range(self):
        """Combined confidence is always within [0, 1,000,000]."""
        for odds in ([0], [1_000_000], [1_000_000] * 20, [1, 1], [0, 1_000_000]):
            assert 0 <= combine_reputation(odds) <= 1_000_000

    def test_combine_confidence_rounds_half_up(self):
        """250,000.5 rounds up to 250,001."""
        assert combine_confidence(500_001, 500_000) == 250_001

    def test_combine_confidence_identity(self):
        """Combining with certainty leaves the value unchanged."""
        assert combine_confidence(1_000_000, 123_456) == 123_456


class TestLiveProbabilities:
    """Test the live per-hop probability path."""

    def test_probabilities_folded_in_order(self, sample_peer_ids, two_hop_route):
        """Per-hop odds are queried in hop order and multiplied."""
        query = MagicMock(side_effect=[
            ProbabilityOutcome.supported(900_000),
            ProbabilityOutcome.supported(800_000),
        ])

        result = estimate_route_confidence(sample_peer_ids[0], two_hop_route, _snapshot(), query)

        assert result.confidence == 720_000
        assert result.basis == BASIS_PROBABILITY
        assert query.call_args_list[0].args == (sample_peer_ids[0], sample_peer_ids[1], 1_001_000)
        assert query.call_args_list[1].args == (sample_peer_ids[1], sample_peer_ids[2], 1_000_000)

    def test_unsupported_falls_back_to_reputation(self, sample_peer_ids, two_hop_route,
                                                  sample_reputation_response):
        """An unsupported query abandons the fold without an error."""
        query = MagicMock(return_value=ProbabilityOutcome.unsupported())
        snapshot = ReputationSnapshot.from_rpc(sample_reputation_response)

        result = estimate_route_confidence(sample_peer_ids[0], two_hop_route, snapshot, query)

        assert result.confidence == 350_000
        assert result.basis == BASIS_REPUTATION
        assert query.call_count == 1

    def test_unsupported_midway_discards_partial_value(self, sample_peer_ids, two_hop_route):
        """A late unsupported answer does not leak the partial product."""
        query = MagicMock(side_effect=[
            ProbabilityOutcome.supported(100_000),
            ProbabilityOutcome.unsupported(),
        ])

        result = estimate_route_confidence(sample_peer_ids[0], two_hop_route, _snapshot(), query)

        assert result.confidence == 950_000 * 950_000 // 1_000_000
        assert result.basis == BASIS_REPUTATION

    def test_failed_query_raises(self, sample_peer_ids, two_hop_route):
        """A failed outcome is a hard ConfidenceQueryFailed."""
        cause = RuntimeError("connection reset")
        query = MagicMock(return_value=ProbabilityOutcome.failed(cause))

        with pytest.raises(ConfidenceQueryFailed) as exc_info:
            estimate_route_confidence(sample_peer_ids[0], two_hop_route, _snapshot(), query)

        assert exc_info.value.__cause__ is cause
        assert exc_info.value.kind == "ConfidenceQueryFailed"

    def test_raising_query_wrapped(self, sample_peer_ids, two_hop_route):
        """Exceptions from the transport, like cancellation, become ConfidenceQueryFailed."""
        query = MagicMock(side_effect=TimeoutError("cancelled"))

        with pytest.raises(ConfidenceQueryFailed) as exc_info:
            estimate_route_confidence(sample_peer_ids[0], two_hop_route, _snapshot(), query)

        assert isinstance(exc_info.value.__cause__, TimeoutError)

    def test_out_of_range_probability_clamped(self):
        """Supported outcomes are clamped into [0, 1,000,000]."""
        assert ProbabilityOutcome.supported(2_000_000).confidence == 1_000_000
        assert ProbabilityOutcome.supported(-5).confidence == 0


class TestHopValidation:
    """Test InvalidHopSet preconditions."""

    def test_empty_hops_rejected(self, sample_peer_ids):
        """An empty route is a usage error, not full confidence."""
        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(sample_peer_ids[0], [], _snapshot())

    def test_non_list_hops_rejected(self, sample_peer_ids):
        """Hops must be a list."""
        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(sample_peer_ids[0], None, _snapshot())

    def test_hop_without_channel_rejected(self, sample_peer_ids):
        """Every hop needs a channel."""
        hops = [{"id": sample_peer_ids[1], "amount_msat": 1000}]

        with pytest.raises(InvalidHopSet) as exc_info:
            estimate_route_confidence(sample_peer_ids[0], hops, _snapshot())

        assert exc_info.value.context["index"] == 0

    def test_hop_without_node_rejected(self, sample_peer_ids):
        """Every hop needs a destination node."""
        hops = [{"channel": "1x1x1", "amount_msat": 1000}]

        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(sample_peer_ids[0], hops, _snapshot())

    def test_invalid_amount_rejected(self, sample_peer_ids):
        """A non-numeric forward amount is rejected."""
        hops = [{"channel": "1x1x1", "id": sample_peer_ids[1], "amount_msat": "lots"}]

        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(sample_peer_ids[0], hops, _snapshot())

    def test_missing_source_rejected(self, sample_peer_ids):
        """A route needs a source node."""
        hops = [Hop("1x1x1", sample_peer_ids[1], 1000)]

        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(None, hops, _snapshot())

    def test_validation_happens_before_queries(self, sample_peer_ids):
        """No probability query is issued for an invalid hop set."""
        query = MagicMock()

        with pytest.raises(InvalidHopSet):
            estimate_route_confidence(sample_peer_ids[0], [{"channel": "1x1x1"}], _snapshot(), query)

        query.assert_not_called()


class TestRouteConfidenceEstimator:
    """Test the estimator wrapper and route ranking."""

    def _routes(self, sample_peer_ids, two_hop_route):
        direct = [{"channel": "100x1x0", "id": sample_peer_ids[1], "amount_msat": 1_000_000}]
        return [two_hop_route, direct]

    def test_estimate_uses_config_default(self, mock_plugin, sample_peer_ids):
        """The estimator reads default odds from its config snapshot."""
        cfg = Config(default_confidence=900_000).snapshot()
        estimator = RouteConfidenceEstimator(mock_plugin, cfg)

        result = estimator.estimate(sample_peer_ids[0], [Hop("1x1x1", sample_peer_ids[1], 1)], _snapshot())

        assert result.confidence == 900_000
        assert mock_plugin.log.called

    def test_rank_orders_best_first(self, mock_plugin, sample_peer_ids, two_hop_route,
                                    sample_reputation_response):
        """Routes come back sorted by descending confidence."""
        estimator = RouteConfidenceEstimator(mock_plugin, Config().snapshot())
        snapshot = ReputationSnapshot.from_rpc(sample_reputation_response)

        ranked = estimator.rank_routes(
            sample_peer_ids[0], self._routes(sample_peer_ids, two_hop_route), snapshot
        )

        assert [r.confidence for r in ranked] == [500_000, 350_000]
        assert len(ranked[0].hops) == 1

    def test_rank_drops_routes_below_floor(self, mock_plugin, sample_peer_ids, two_hop_route,
                                           sample_reputation_response):
        """Routes under min_confidence are dropped."""
        estimator = RouteConfidenceEstimator(mock_plugin, Config().snapshot())
        snapshot = ReputationSnapshot.from_rpc(sample_reputation_response)

        ranked = estimator.rank_routes(
            sample_peer_ids[0], self._routes(sample_peer_ids, two_hop_route), snapshot,
            min_confidence=400_000
        )

        assert [r.confidence for r in ranked] == [500_000]

    def test_rank_floor_from_config(self, mock_plugin, sample_peer_ids, two_hop_route,
                                    sample_reputation_response):
        """Without an explicit floor the configured one applies."""
        cfg = Config(min_route_confidence=600_000).snapshot()
        estimator = RouteConfidenceEstimator(mock_plugin, cfg)
        snapshot = ReputationSnapshot.from_rpc(sample_reputation_response)

        ranked = estimator.rank_routes(
            sample_peer_ids[0], self._routes(sample_peer_ids, two_hop_route), snapshot
        )

        assert ranked == []

    def test_rank_stops_probing_after_unsupported(self, mock_plugin, sample_peer_ids, two_hop_route):
        """Capability detection happens once per ranking call."""
        estimator = RouteConfidenceEstimator(mock_plugin, Config().snapshot())
        query = MagicMock(return_value=ProbabilityOutcome.unsupported())

        ranked = estimator.rank_routes(
            sample_peer_ids[0], self._routes(sample_peer_ids, two_hop_route), _snapshot(), query
        )

        assert query.call_count == 1
        assert all(r.basis == BASIS_REPUTATION for r in ranked)

    def test_rank_ties_keep_discovery_order(self, mock_plugin, sample_peer_ids):
        """Equal scores keep the order route discovery returned."""
        estimator = RouteConfidenceEstimator(mock_plugin, Config().snapshot())
        first = [Hop("1x1x1", sample_peer_ids[1], 1)]
        second = [Hop("2x2x2", sample_peer_ids[2], 1)]

        ranked = estimator.rank_routes(sample_peer_ids[0], [first, second], _snapshot())

        assert [r.hops[0].channel_id for r in ranked] == ["1x1x1", "2x2x2"]

    @pytest.mark.parametrize("floor", ["abc", "1.5", -1, 1_000_001, True])
    def test_rank_rejects_invalid_floor(self, mock_plugin, sample_peer_ids, two_hop_route, floor):
        """A bad min_confidence is a structured error raised before any query."""
        estimator = RouteConfidenceEstimator(mock_plugin, Config().snapshot())
        query = MagicMock()

        with pytest.raises(InvalidParameter) as exc_info:
            estimator.rank_routes(sample_peer_ids[0], [two_hop_route], _snapshot(), query, floor)

        query.assert_not_called()
        assert exc_info.value.to_dict()["kind"] == "InvalidParameter"
        assert "min_confidence" in exc_info.value.context

    def test_confidence_param_accepts_numeric_strings(self):
        """lightning-cli passes positional numbers as strings."""
        assert parse_confidence_param("min_confidence", "250000") == 250_000
        assert parse_confidence_param("min_confidence", 0) == 0
