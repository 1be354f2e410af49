"""
Reputation model for cl-route-confidence

Read-only snapshot of historical forwarding confidence, keyed by the
node that forwards. Each node record carries:
- base_confidence: general odds that the node forwards successfully
- channels: per-channel odds, relevant above min_relevant_amount
- peers: per-next-peer odds, relevant above min_relevant_amount

Confidence values are integers scaled to one million (1_000_000 = 100%).
Amounts are millisatoshis.

The snapshot is built once per evaluation from the reputation query
response and never written to by the engine.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidHopSet

# Confidence scale: probabilities are integers out of one million
FULL_CONFIDENCE = 1_000_000

# Odds assumed for a forwarding node we know nothing about (95%)
DEFAULT_CONFIDENCE = 950_000


def clamp_confidence(value: Any) -> int:
    """Coerce a confidence value to an int within [0, FULL_CONFIDENCE]."""
    return max(0, min(FULL_CONFIDENCE, int(value)))


def parse_msat(msat_val: Any) -> int:
    """
    Convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.

    Raises:
        ValueError: if the value is negative or not numeric
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        raise ValueError(f"Invalid msat value: {msat_val!r}")
    if isinstance(msat_val, int):
        value = msat_val
    elif isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        value = int(clean_val)
    else:
        raise ValueError(f"Invalid msat value: {msat_val!r}")
    if value < 0:
        raise ValueError(f"Negative msat value: {msat_val!r}")
    return value


# =============================================================================
# HOPS
# =============================================================================

def hop_identity(data: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """(channel_id, to_node) from any accepted hop dict field names."""
    channel_id = data.get("channel_id") or data.get("channel") or data.get("short_channel_id")
    to_node = data.get("to_node") or data.get("id") or data.get("node_id")
    return channel_id, to_node


@dataclass(frozen=True)
class Hop:
    """
    One hop of a route: the channel taken and the node it arrives at.

    Hops are deliberately permissive at construction time; each algorithm
    validates the fields it needs and reports its own error kind.
    """
    channel_id: Optional[str]
    to_node: Optional[str]
    forward_amount: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Hop':
        """
        Build a hop from an RPC-style dict.

        Accepts lightningd getroute hops ({channel, id, amount_msat}) as
        well as the engine's own field names.
        """
        channel_id, to_node = hop_identity(data)

        raw_amount = data.get("forward_amount")
        if raw_amount is None:
            raw_amount = data.get("amount_msat")
        try:
            forward_amount = parse_msat(raw_amount)
        except (ValueError, TypeError) as e:
            raise InvalidHopSet(
                f"Hop has an invalid forward amount: {e}",
                {"channel_id": channel_id, "to_node": to_node},
            )

        return cls(channel_id=channel_id, to_node=to_node, forward_amount=forward_amount)

    def is_complete(self) -> bool:
        """True if the hop names both a channel and a destination node."""
        return bool(self.channel_id) and bool(self.to_node)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "to_node": self.to_node,
            "forward_amount": self.forward_amount,
        }


def hops_from_dicts(items: Iterable[Any]) -> List[Hop]:
    """Convert a list of hop dicts (or Hop objects) into Hops."""
    return [item if isinstance(item, Hop) else Hop.from_dict(item) for item in items]


# =============================================================================
# REPUTATION RECORDS
# =============================================================================

@dataclass(frozen=True)
class ChannelReputation:
    """Confidence in forwarding over one specific channel."""
    channel_id: str
    confidence: int
    min_relevant_amount: int = 0


@dataclass(frozen=True)
class PeerReputation:
    """Confidence in forwarding to one specific next peer."""
    to_node: str
    confidence: int
    min_relevant_amount: int = 0


@dataclass(frozen=True)
class ReputationRecord:
    """Historical confidence for a single forwarding node."""
    node: str
    base_confidence: Optional[int] = None
    channels: Tuple[ChannelReputation, ...] = field(default_factory=tuple)
    peers: Tuple[PeerReputation, ...] = field(default_factory=tuple)

    def channel(self, channel_id: str) -> Optional[ChannelReputation]:
        for record in self.channels:
            if record.channel_id == channel_id:
                return record
        return None

    def peer(self, to_node: str) -> Optional[PeerReputation]:
        for record in self.peers:
            if record.to_node == to_node:
                return record
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ReputationRecord':
        """
        Build a record from a reputation query node entry.

        Expected shape:
            {
                "node_id": "02abc...",
                "confidence": 900000,            # optional
                "channels": [{"short_channel_id": "1x2x3",
                              "confidence": 800000,
                              "min_relevant_msat": 1000}],
                "peers": [{"node_id": "03def...",
                           "confidence": 700000,
                           "min_relevant_msat": 0}]
            }
        """
        node = data.get("node_id") or data.get("node") or data.get("id")

        # Absent means no general opinion; zero is a real opinion
        base = data.get("confidence")
        base_confidence = clamp_confidence(base) if base is not None else None

        channels = tuple(
            ChannelReputation(
                channel_id=c.get("short_channel_id") or c.get("channel_id"),
                confidence=clamp_confidence(c.get("confidence", 0)),
                min_relevant_amount=parse_msat(c.get("min_relevant_msat")),
            )
            for c in data.get("channels", [])
        )
        peers = tuple(
            PeerReputation(
                to_node=p.get("node_id") or p.get("to_node"),
                confidence=clamp_confidence(p.get("confidence", 0)),
                min_relevant_amount=parse_msat(p.get("min_relevant_msat")),
            )
            for p in data.get("peers", [])
        )
        return cls(node=node, base_confidence=base_confidence, channels=channels, peers=peers)


class ReputationSnapshot:
    """
    Immutable view over all known node reputation records.

    Usage:
        snapshot = ReputationSnapshot.from_rpc(rpc.call("reputation-listnodes"))
        record = snapshot.get(node_id)
    """

    def __init__(self, records: Iterable[ReputationRecord] = ()):
        self._records: Dict[str, ReputationRecord] = {}
        for record in records:
            # First record wins if the source repeats a node
            self._records.setdefault(record.node, record)

    @classmethod
    def from_rpc(cls, response: Dict[str, Any]) -> 'ReputationSnapshot':
        return cls(ReputationRecord.from_dict(n) for n in response.get("nodes", []))

    def get(self, node: str) -> Optional[ReputationRecord]:
        return self._records.get(node)

    def __contains__(self, node: str) -> bool:
        return node in self._records

    def __len__(self) -> int:
        return len(self._records)
