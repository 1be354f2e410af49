"""
Bridge between the routing engine and lightningd JSON-RPC.

Implements the two queries the confidence engine consumes:

1. Reputation query: full snapshot of node/channel/peer confidence,
   served by a reputation provider plugin.
2. Per-hop probability query (optional capability): success odds for
   one hop at a given amount.

Capability detection:
- A JSON-RPC "method not found" error means the provider does not offer
  live probabilities. That is reported as ProbabilityOutcome.unsupported()
  and remembered for a TTL so each payment attempt does not re-probe.
- Any other RPC error is reported as ProbabilityOutcome.failed().

Reputation query errors are not caught here; they surface to the caller
unchanged.
"""

import time
from typing import Any, Dict, Optional

from pyln.client import RpcError

from .confidence import ProbabilityOutcome
from .reputation import ReputationSnapshot

# JSON-RPC 2.0 "Method not found", returned by lightningd for unknown commands
METHOD_NOT_FOUND = -32601


def is_method_not_found(error: RpcError) -> bool:
    """True if an RpcError says the method does not exist."""
    details = getattr(error, "error", None)
    if isinstance(details, dict):
        return details.get("code") == METHOD_NOT_FOUND
    return False


class LightningReputationBridge:
    """
    Serves reputation and per-hop probability queries over lightningd RPC.

    Usage:
        bridge = LightningReputationBridge(plugin, config)
        snapshot = bridge.get_reputation_snapshot()
        outcome = bridge.query_probability(from_node, to_node, amount_msat)
    """

    def __init__(self, plugin, config):
        """
        Initialize the bridge.

        Args:
            plugin: Reference to the pyln Plugin (or ThreadSafePluginProxy)
            config: Config providing method names and the unsupported TTL
        """
        self.plugin = plugin
        self.config = config

        # Node id cache (our own public key never changes while running)
        self._node_id: Optional[str] = None

        # Probability availability: None = unknown, True/False = known
        self._probability_available: Optional[bool] = None
        self._availability_check_time: float = 0

    def _log(self, message: str, level: str = "debug") -> None:
        """Log a message if plugin is available."""
        if self.plugin:
            self.plugin.log(f"LIGHTNING_BRIDGE: {message}", level=level)

    # =========================================================================
    # NODE IDENTITY
    # =========================================================================

    def get_node_id(self) -> str:
        """Our node's public key, used as the default route source."""
        if self._node_id is None:
            self._node_id = self.plugin.rpc.getinfo()["id"]
        return self._node_id

    # =========================================================================
    # REPUTATION QUERY
    # =========================================================================

    def get_reputation_snapshot(self) -> ReputationSnapshot:
        """
        Fetch the full reputation snapshot.

        Raises:
            RpcError: passed through unchanged from lightningd
        """
        response = self.plugin.rpc.call(self.config.reputation_method, {})
        snapshot = ReputationSnapshot.from_rpc(response or {})
        self._log(f"Loaded reputation for {len(snapshot)} nodes")
        return snapshot

    # =========================================================================
    # PER-HOP PROBABILITY QUERY
    # =========================================================================

    def is_probability_known_unsupported(self) -> bool:
        """
        True if the probability method was recently found to be missing.

        The negative result expires after probability_unsupported_ttl so a
        provider loaded later is picked up.
        """
        if self._probability_available is not False:
            return False
        age = time.time() - self._availability_check_time
        if age < self.config.probability_unsupported_ttl:
            return True
        self._probability_available = None
        return False

    def _mark_availability(self, available: bool) -> None:
        if self._probability_available != available:
            self._log(
                f"Probability method {self.config.probability_method} "
                f"{'available' if available else 'not supported'}",
                level="info"
            )
        self._probability_available = available
        self._availability_check_time = time.time()

    def query_probability(self, from_node: str, to_node: str, amount_msat: int) -> ProbabilityOutcome:
        """
        Ask the provider for the odds of forwarding amount_msat over one hop.

        Returns:
            ProbabilityOutcome (supported, unsupported or failed); never raises
            for RPC errors
        """
        if self.is_probability_known_unsupported():
            return ProbabilityOutcome.unsupported()

        try:
            result = self.plugin.rpc.call(self.config.probability_method, {
                "from_node": from_node,
                "to_node": to_node,
                "amount_msat": amount_msat,
            })
        except RpcError as e:
            if is_method_not_found(e):
                self._mark_availability(False)
                return ProbabilityOutcome.unsupported()
            self._log(f"Probability query failed: {e}", level="warn")
            return ProbabilityOutcome.failed(e)

        self._mark_availability(True)
        return self._parse_probability(result)

    def _parse_probability(self, result: Any) -> ProbabilityOutcome:
        confidence: Any = None
        if isinstance(result, dict):
            confidence = result.get("confidence")
        try:
            return ProbabilityOutcome.supported(int(confidence))
        except (TypeError, ValueError):
            return ProbabilityOutcome.failed(
                ValueError(f"Expected confidence in probability response, got {result!r}")
            )

    def get_status(self) -> Dict[str, Any]:
        """Capability status for route-config get."""
        return {
            "probability_method": self.config.probability_method,
            "probability_available": self._probability_available,
            "reputation_method": self.config.reputation_method,
        }
