"""
Configuration module for cl-route-confidence

Contains the Config dataclass that holds all tunable parameters
for the route confidence plugin.

- ConfigSnapshot: Immutable snapshot used for the duration of one RPC call
- Runtime configuration updates via the route-config RPC
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

from .exclusions import FailureReason, RuleKind, parse_reason_rules


# Immutable keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'reputation_method',
    'probability_method',
})

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'default_confidence': int,
    'min_route_confidence': int,
    'probability_unsupported_ttl': int,
    'reason_rules': str,
    'rpc_timeout_seconds': int,
    'reputation_method': str,
    'probability_method': str,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'default_confidence': (0, 1_000_000),
    'min_route_confidence': (0, 1_000_000),
    'probability_unsupported_ttl': (0, 86400),
    'rpc_timeout_seconds': (1, 300),
}


@dataclass
class Config:
    """
    Configuration container for the route confidence plugin.

    All values can be set via plugin options at startup.
    """

    # Odds for a forwarding node with no reputation at all (95%)
    default_confidence: int = 950_000

    # Routes scoring below this are dropped by route-rank (0 = keep all)
    min_route_confidence: int = 0

    # Collaborator RPC methods
    reputation_method: str = 'reputation-listnodes'
    probability_method: str = 'reputation-queryprobability'

    # Seconds to remember that the probability method is unsupported
    probability_unsupported_ttl: int = 300

    # Failure reason overrides, e.g. "FeeInsufficient=edge,ChannelDisabled=edge"
    reason_rules: str = ''

    rpc_timeout_seconds: int = 15

    # Internal version tracking (not a user-configurable option)
    _version: int = field(default=0, repr=False, compare=False)

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for one RPC call.

        Handlers capture a snapshot on entry so a concurrent route-config
        set cannot change parameters halfway through an evaluation.
        """
        return ConfigSnapshot.from_config(self)

    def update_runtime(self, key: str, value: str) -> Dict[str, Any]:
        """
        Validate and apply a runtime update.

        Returns:
            Dict with status, old_value, new_value, version
        """
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if not hasattr(self, key) or key.startswith('_'):
            return {"error": f"Unknown config key: {key}"}

        field_type = CONFIG_FIELD_TYPES.get(key, str)
        try:
            if field_type == int:
                typed_value = int(value)
            else:
                typed_value = value
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        if key == 'reason_rules':
            try:
                parse_reason_rules(typed_value)
            except ValueError as e:
                return {"error": f"Invalid reason_rules: {e}"}

        old_value = getattr(self, key)
        setattr(self, key, typed_value)
        self._version += 1

        return {
            "status": "success",
            "key": key,
            "old_value": old_value,
            "new_value": typed_value,
            "version": self._version
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot for a single evaluation.

    Usage:
        def handler(...):
            cfg = config.snapshot()  # Immutable for this call
            # All logic uses cfg, never config directly
    """
    default_confidence: int
    min_route_confidence: int
    reputation_method: str
    probability_method: str
    probability_unsupported_ttl: int
    reason_rules: str
    rpc_timeout_seconds: int

    # Version tracking
    version: int = 0

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            default_confidence=config.default_confidence,
            min_route_confidence=config.min_route_confidence,
            reputation_method=config.reputation_method,
            probability_method=config.probability_method,
            probability_unsupported_ttl=config.probability_unsupported_ttl,
            reason_rules=config.reason_rules,
            rpc_timeout_seconds=config.rpc_timeout_seconds,
            version=config._version,
        )

    def rules(self) -> Dict[FailureReason, RuleKind]:
        """The effective reason-to-rule table."""
        return parse_reason_rules(self.reason_rules)
