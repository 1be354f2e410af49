"""
Failure-to-exclusion module for cl-route-confidence

Turns a failed payment attempt into the graph elements the next route
search must avoid.

Input is a FailureReport: which node reported the failure, the channel
it blamed (if any), the failure reason, and the hops the attempt used.
Output is an ordered list of ExclusionDirectives:
- node-incoming: avoid every edge into `to_node`
- edge: avoid one directed channel traversal

Reasons are dispatched through a rule table (reason -> RuleKind) so the
policy for each failure code is data, not nested conditionals. A reason
without a rule raises UnrecognizedReason instead of being silently
ignored.

ExclusionSet accumulates directives across attempts and translates them
into lightningd `getroute` exclusions.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import (
    FailingChannelMismatch,
    MalformedHops,
    MissingHops,
    MissingReason,
    MissingReportingNode,
    UnmappableFailure,
    UnrecognizedReason,
)
from .reputation import Hop, hop_identity


class FailureReason(Enum):
    """Routing failure reasons reported by a payment attempt."""
    AMOUNT_BELOW_MINIMUM = "AmountBelowMinimum"
    CHANNEL_DISABLED = "ChannelDisabled"
    EXPIRY_TOO_FAR = "ExpiryTooFar"
    EXPIRY_TOO_SOON = "ExpiryTooSoon"
    FEE_INSUFFICIENT = "FeeInsufficient"
    FINAL_EXPIRY_TOO_SOON = "FinalExpiryTooSoon"
    FINAL_INCORRECT_CLTV_EXPIRY = "FinalIncorrectCltvExpiry"
    FINAL_INCORRECT_HTLC_AMOUNT = "FinalIncorrectHtlcAmount"
    INCORRECT_CLTV_EXPIRY = "IncorrectCltvExpiry"
    INCORRECT_PAYMENT_AMOUNT = "IncorrectPaymentAmount"
    INVALID_ONION_BLINDING = "InvalidOnionBlinding"
    INVALID_ONION_HMAC = "InvalidOnionHmac"
    INVALID_ONION_KEY = "InvalidOnionKey"
    INVALID_ONION_PAYLOAD = "InvalidOnionPayload"
    INVALID_ONION_VERSION = "InvalidOnionVersion"
    INVALID_REALM = "InvalidRealm"
    MPP_TIMEOUT = "MppTimeout"
    PERMANENT_CHANNEL_FAILURE = "PermanentChannelFailure"
    PERMANENT_NODE_FAILURE = "PermanentNodeFailure"
    REQUIRED_CHANNEL_FEATURE_MISSING = "RequiredChannelFeatureMissing"
    REQUIRED_NODE_FEATURE_MISSING = "RequiredNodeFeatureMissing"
    TEMPORARY_CHANNEL_FAILURE = "TemporaryChannelFailure"
    TEMPORARY_NODE_FAILURE = "TemporaryNodeFailure"
    UNKNOWN_NEXT_PEER = "UnknownNextPeer"
    UNKNOWN_PAYMENT_HASH = "UnknownPaymentHash"


class RuleKind(Enum):
    """How a failure reason translates into exclusions."""
    TERMINAL = "terminal"  # Destination rejected on final-hop semantics
    NODE = "node"          # Failing edge plus all inbound paths to its origin
    LINK = "link"          # Failing edge plus the edge the origin could not forward over
    EDGE = "edge"          # Failing edge only


DEFAULT_REASON_RULES: Dict[FailureReason, RuleKind] = {
    FailureReason.UNKNOWN_PAYMENT_HASH: RuleKind.TERMINAL,
    FailureReason.INCORRECT_PAYMENT_AMOUNT: RuleKind.TERMINAL,
    FailureReason.FINAL_INCORRECT_CLTV_EXPIRY: RuleKind.TERMINAL,
    FailureReason.FINAL_INCORRECT_HTLC_AMOUNT: RuleKind.TERMINAL,
    FailureReason.FINAL_EXPIRY_TOO_SOON: RuleKind.TERMINAL,
    FailureReason.MPP_TIMEOUT: RuleKind.TERMINAL,
    FailureReason.INCORRECT_CLTV_EXPIRY: RuleKind.NODE,
    FailureReason.EXPIRY_TOO_SOON: RuleKind.NODE,
    FailureReason.EXPIRY_TOO_FAR: RuleKind.NODE,
    FailureReason.TEMPORARY_NODE_FAILURE: RuleKind.NODE,
    FailureReason.PERMANENT_NODE_FAILURE: RuleKind.NODE,
    FailureReason.REQUIRED_NODE_FEATURE_MISSING: RuleKind.NODE,
    FailureReason.UNKNOWN_NEXT_PEER: RuleKind.LINK,
}


# =============================================================================
# BOLT #4 FAILURE CODES
# =============================================================================

BADONION = 0x8000
PERM = 0x4000
NODE = 0x2000
UPDATE = 0x1000

BOLT4_FAILURES: Tuple[Tuple[int, str, FailureReason], ...] = (
    (PERM | 1, "invalid_realm", FailureReason.INVALID_REALM),
    (NODE | 2, "temporary_node_failure", FailureReason.TEMPORARY_NODE_FAILURE),
    (PERM | NODE | 2, "permanent_node_failure", FailureReason.PERMANENT_NODE_FAILURE),
    (PERM | NODE | 3, "required_node_feature_missing", FailureReason.REQUIRED_NODE_FEATURE_MISSING),
    (BADONION | PERM | 4, "invalid_onion_version", FailureReason.INVALID_ONION_VERSION),
    (BADONION | PERM | 5, "invalid_onion_hmac", FailureReason.INVALID_ONION_HMAC),
    (BADONION | PERM | 6, "invalid_onion_key", FailureReason.INVALID_ONION_KEY),
    (UPDATE | 7, "temporary_channel_failure", FailureReason.TEMPORARY_CHANNEL_FAILURE),
    (PERM | 8, "permanent_channel_failure", FailureReason.PERMANENT_CHANNEL_FAILURE),
    (PERM | 9, "required_channel_feature_missing", FailureReason.REQUIRED_CHANNEL_FEATURE_MISSING),
    (PERM | 10, "unknown_next_peer", FailureReason.UNKNOWN_NEXT_PEER),
    (UPDATE | 11, "amount_below_minimum", FailureReason.AMOUNT_BELOW_MINIMUM),
    (UPDATE | 12, "fee_insufficient", FailureReason.FEE_INSUFFICIENT),
    (UPDATE | 13, "incorrect_cltv_expiry", FailureReason.INCORRECT_CLTV_EXPIRY),
    (UPDATE | 14, "expiry_too_soon", FailureReason.EXPIRY_TOO_SOON),
    (PERM | 15, "incorrect_or_unknown_payment_details", FailureReason.UNKNOWN_PAYMENT_HASH),
    (PERM | 16, "incorrect_payment_amount", FailureReason.INCORRECT_PAYMENT_AMOUNT),
    (17, "final_expiry_too_soon", FailureReason.FINAL_EXPIRY_TOO_SOON),
    (18, "final_incorrect_cltv_expiry", FailureReason.FINAL_INCORRECT_CLTV_EXPIRY),
    (19, "final_incorrect_htlc_amount", FailureReason.FINAL_INCORRECT_HTLC_AMOUNT),
    (UPDATE | 20, "channel_disabled", FailureReason.CHANNEL_DISABLED),
    (21, "expiry_too_far", FailureReason.EXPIRY_TOO_FAR),
    (PERM | 22, "invalid_onion_payload", FailureReason.INVALID_ONION_PAYLOAD),
    (23, "mpp_timeout", FailureReason.MPP_TIMEOUT),
    (BADONION | PERM | 24, "invalid_onion_blinding", FailureReason.INVALID_ONION_BLINDING),
)

FAILCODE_REASONS: Dict[int, FailureReason] = {code: reason for code, _, reason in BOLT4_FAILURES}
FAILCODENAME_REASONS: Dict[str, FailureReason] = {
    f"WIRE_{name.upper()}": reason for _, name, reason in BOLT4_FAILURES
}


def parse_reason(value: Any) -> FailureReason:
    """
    Resolve a reason from an enum member, its value ("UnknownNextPeer"),
    or a lightningd failcodename ("WIRE_UNKNOWN_NEXT_PEER").
    """
    if isinstance(value, FailureReason):
        return value
    try:
        return FailureReason(value)
    except ValueError:
        pass
    if isinstance(value, str) and value.upper() in FAILCODENAME_REASONS:
        return FAILCODENAME_REASONS[value.upper()]
    raise UnrecognizedReason(f"Unknown failure reason {value!r}", {"reason": str(value)})


def parse_reason_rules(text: str,
                       base: Optional[Dict[FailureReason, RuleKind]] = None) -> Dict[FailureReason, RuleKind]:
    """
    Apply 'Reason=kind' overrides to a rule table.

    Example: "FeeInsufficient=edge,ChannelDisabled=edge"

    Raises:
        ValueError: on a malformed entry or unknown reason/kind
    """
    rules = dict(DEFAULT_REASON_RULES if base is None else base)
    for entry in (text or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ValueError(f"Expected Reason=kind, got '{entry}'")
        reason_text, kind_text = (part.strip() for part in entry.split("=", 1))
        try:
            reason = parse_reason(reason_text)
        except UnrecognizedReason as e:
            raise ValueError(str(e))
        rules[reason] = RuleKind(kind_text.lower())
    return rules


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass(frozen=True)
class ExclusionDirective:
    """
    A graph element to avoid in the next route search.

    channel_id None means a node-incoming exclusion of `to_node`.
    from_node None on an edge means the edge starts at the route source.
    """
    reason: FailureReason
    to_node: str
    channel_id: Optional[str] = None
    from_node: Optional[str] = None

    @property
    def is_edge(self) -> bool:
        return self.channel_id is not None

    def key(self) -> Tuple[str, str, FailureReason]:
        if self.is_edge:
            return ("edge", self.channel_id, self.reason)
        return ("node", self.to_node, self.reason)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"reason": self.reason.value, "to_node": self.to_node}
        if self.is_edge:
            result["channel_id"] = self.channel_id
            if self.from_node is not None:
                result["from_node"] = self.from_node
        return result


@dataclass
class FailureReport:
    """A failed payment attempt as reported by the payment executor."""
    reporting_node: Optional[str]
    reason: Any
    attempted_hops: Optional[List[Any]]
    failing_channel: Optional[str] = None

    @classmethod
    def from_sendpay_failure(cls, data: Dict[str, Any], attempted_hops: List[Any]) -> 'FailureReport':
        """
        Build a report from lightningd sendpay/waitsendpay failure data.

        Reads erring_node, erring_channel and failcode (falling back to
        failcodename). Unknown codes raise UnrecognizedReason.
        """
        failcode = data.get("failcode")
        if failcode is not None:
            if failcode not in FAILCODE_REASONS:
                raise UnrecognizedReason(f"Unknown BOLT #4 failcode {failcode}", {"failcode": failcode})
            reason: Any = FAILCODE_REASONS[failcode]
        else:
            reason = data.get("failcodename")

        return cls(
            reporting_node=data.get("erring_node"),
            reason=reason,
            attempted_hops=attempted_hops,
            failing_channel=data.get("erring_channel"),
        )


# =============================================================================
# CORE ALGORITHM
# =============================================================================

def _validated_hops(report: FailureReport) -> List[Hop]:
    hops = report.attempted_hops
    if not isinstance(hops, (list, tuple)) or not hops:
        raise MissingHops("Expected array of hops to derive exclusions")

    parsed = []
    for index, item in enumerate(hops):
        hop = item if isinstance(item, Hop) else None
        if hop is None and isinstance(item, dict):
            channel_id, to_node = hop_identity(item)
            hop = Hop(channel_id=channel_id, to_node=to_node)
        if hop is None or not hop.is_complete():
            raise MalformedHops(
                "Expected array of hops with channels and nodes to derive exclusions",
                {"index": index},
            )
        parsed.append(hop)
    return parsed


def _edge_at(hops: List[Hop], index: int, reason: FailureReason) -> ExclusionDirective:
    return ExclusionDirective(
        reason=reason,
        to_node=hops[index].to_node,
        channel_id=hops[index].channel_id,
        from_node=hops[index - 1].to_node if index > 0 else None,
    )


def _locate_channel(hops: List[Hop], channel_id: str) -> int:
    matches = [i for i, hop in enumerate(hops) if hop.channel_id == channel_id]
    if len(matches) != 1:
        raise FailingChannelMismatch(
            f"Failing channel {channel_id} matches {len(matches)} attempted hops",
            {"failing_channel": channel_id, "matches": len(matches)},
        )
    return matches[0]


def _dedupe(directives: Iterable[ExclusionDirective]) -> List[ExclusionDirective]:
    seen = set()
    result = []
    for directive in directives:
        if directive.key() not in seen:
            seen.add(directive.key())
            result.append(directive)
    return result


def derive_exclusions(report: FailureReport,
                      rules: Optional[Dict[FailureReason, RuleKind]] = None) -> List[ExclusionDirective]:
    """
    Derive the exclusions to apply after a routing failure.

    Directives are ordered most specific first: the edge at the failure
    point, then the node or edge adjacent to it.

    Args:
        report: The failed attempt
        rules: Reason-to-rule table (defaults to DEFAULT_REASON_RULES)

    Returns:
        List of ExclusionDirective (empty when the destination was reached)

    Raises:
        MissingHops, MalformedHops, MissingReportingNode, MissingReason:
            precondition violations, in that order of precedence
        UnrecognizedReason: reason unknown or without a rule
        FailingChannelMismatch: failing channel not exactly once in hops
        UnmappableFailure: no rule applies to this combination
    """
    hops = _validated_hops(report)
    if not report.reporting_node:
        raise MissingReportingNode("Expected public key of failure to derive exclusions")
    if not report.reason:
        raise MissingReason("Expected reason for failure to derive exclusions")

    rules = DEFAULT_REASON_RULES if rules is None else rules
    reason = parse_reason(report.reason)
    rule = rules.get(reason)
    if rule is None:
        raise UnrecognizedReason(
            f"No exclusion rule configured for {reason.value}",
            {"reason": reason.value},
        )

    reporter = report.reporting_node
    context = {"reporting_node": reporter, "reason": reason.value}

    # The destination answered: the route itself worked
    if rule == RuleKind.TERMINAL and reporter == hops[-1].to_node:
        return []

    if not report.failing_channel:
        # Failure before the first hop from a peer outside the route
        if rule != RuleKind.TERMINAL and reporter not in {hop.to_node for hop in hops}:
            return [ExclusionDirective(reason=reason, to_node=reporter)]
        raise UnmappableFailure("Cannot place failure without a failing channel", context)

    if rule == RuleKind.TERMINAL:
        raise UnmappableFailure("Final-hop failure reported by an intermediate node", context)

    k = _locate_channel(hops, report.failing_channel)
    pivot = _edge_at(hops, k, reason)
    directives = [pivot]

    if rule == RuleKind.NODE and pivot.from_node is not None:
        directives.append(ExclusionDirective(reason=reason, to_node=pivot.from_node))
    elif rule == RuleKind.LINK and k + 1 < len(hops):
        directives.append(_edge_at(hops, k + 1, reason))

    return _dedupe(directives)


# =============================================================================
# EXCLUSION SET
# =============================================================================

def channel_direction(from_node: str, to_node: str) -> int:
    """BOLT #7 direction bit: 0 when traversing from the lesser node id."""
    return 0 if from_node.lower() < to_node.lower() else 1


class ExclusionSet:
    """
    Accumulated exclusions across the attempts of one payment.

    Usage:
        excluded = ExclusionSet()
        excluded.merge(derive_exclusions(report))
        rpc.getroute(destination, amount_msat, riskfactor,
                     exclude=excluded.to_getroute_exclude(our_id))
    """

    def __init__(self, directives: Iterable[ExclusionDirective] = ()):
        self._directives: List[ExclusionDirective] = []
        self._keys = set()
        self.merge(directives)

    def merge(self, directives: Iterable[ExclusionDirective]) -> int:
        """Add directives not already present. Returns how many were added."""
        added = 0
        for directive in directives:
            if directive.key() in self._keys:
                continue
            self._keys.add(directive.key())
            self._directives.append(directive)
            added += 1
        return added

    def to_getroute_exclude(self, source_node: str) -> List[str]:
        """
        Translate to lightningd getroute `exclude` entries.

        Edges become "<scid>/<direction>". Node-incoming directives become
        the node id, since getroute can only exclude a node entirely.
        """
        exclude = []
        for directive in self._directives:
            if directive.is_edge:
                from_node = directive.from_node or source_node
                entry = f"{directive.channel_id}/{channel_direction(from_node, directive.to_node)}"
            else:
                entry = directive.to_node
            if entry not in exclude:
                exclude.append(entry)
        return exclude

    def to_list(self) -> List[Dict[str, Any]]:
        return [directive.to_dict() for directive in self._directives]

    def __iter__(self) -> Iterator[ExclusionDirective]:
        return iter(self._directives)

    def __len__(self) -> int:
        return len(self._directives)
