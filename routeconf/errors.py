"""
Error types for cl-route-confidence

Every error raised by the routing engine derives from RouteEngineError and
carries a machine-checkable `kind` plus a context dict for diagnostics.
The plugin shell converts these into RpcError responses for lightning-cli.

None of these errors are recoverable by retrying the same call with the
same inputs; retry policy belongs to the caller's payment loop.
"""

from typing import Any, Dict, Optional


class RouteEngineError(Exception):
    """Base class for all routing engine errors."""

    kind = "RouteEngineError"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"{self.kind}: {message}")
        self.message = message
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for an RPC error payload."""
        return {
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
        }


# =============================================================================
# CONFIDENCE AGGREGATOR
# =============================================================================

class InvalidHopSet(RouteEngineError):
    """Hop list is empty or a hop lacks a channel or destination node."""
    kind = "InvalidHopSet"


class ConfidenceQueryFailed(RouteEngineError):
    """A live per-hop probability query failed for a reason other than
    the method being unsupported."""
    kind = "ConfidenceQueryFailed"


# =============================================================================
# FAILURE-TO-EXCLUSION MAPPER
# =============================================================================

class MissingHops(RouteEngineError):
    kind = "MissingHops"


class MalformedHops(RouteEngineError):
    kind = "MalformedHops"


class MissingReportingNode(RouteEngineError):
    kind = "MissingReportingNode"


class MissingReason(RouteEngineError):
    kind = "MissingReason"


class UnrecognizedReason(RouteEngineError):
    """Reason is unknown, or has no rule in the active reason table."""
    kind = "UnrecognizedReason"


class FailingChannelMismatch(RouteEngineError):
    """Failing channel does not match exactly one attempted hop."""
    kind = "FailingChannelMismatch"


class UnmappableFailure(RouteEngineError):
    """
    The report is well formed but its combination of reporting node,
    failing channel and reason has no exclusion rule.
    """
    kind = "UnmappableFailure"


# =============================================================================
# PLUGIN PARAMETERS
# =============================================================================

class InvalidParameter(RouteEngineError):
    """An RPC parameter has the wrong type or is out of range."""
    kind = "InvalidParameter"
