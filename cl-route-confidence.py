#!/usr/bin/env python3
"""
cl-route-confidence: A Route Confidence Plugin for Core Lightning

This plugin gives a payment retry loop two answers it cannot get from the
channel graph alone:

1. How likely is this route to succeed?
   Scores a route from live per-hop probabilities when a provider offers
   them, otherwise from historical node/channel/peer reputation.

2. What should the next route search avoid?
   Converts a failed attempt (erring node, erring channel, failure reason,
   attempted hops) into node and directed-edge exclusions, already
   translated for `getroute`'s `exclude` parameter.

Route discovery, payment execution and reputation persistence stay with
lightningd and other plugins; this plugin only reads from them.

Dependencies:
- pyln-client: Core Lightning plugin framework
- A reputation provider plugin exposing the reputation/probability methods

License: MIT
"""

import threading
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from pyln.client import Plugin, RpcError

# Import our modules
from routeconf.config import Config, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from routeconf.confidence import RouteConfidenceEstimator, parse_confidence_param, validate_hops
from routeconf.errors import RouteEngineError
from routeconf.exclusions import ExclusionSet, FailureReport, derive_exclusions, parse_reason_rules
from routeconf.lightning_bridge import LightningReputationBridge


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# pyln-client's RPC is not inherently thread-safe for concurrent calls.
# This lock serializes all RPC calls made on behalf of concurrent
# lightning-cli requests.

RPC_LOCK = threading.Lock()


class RPCTimeoutError(RpcError):
    """Exception raised when the RPC lock cannot be acquired in time."""
    def __init__(self, method):
        self.method = method
        # Initialize RpcError with compatible fields
        super().__init__(method, {}, f"RPC timeout for method: {method}")


class ThreadSafeRpcProxy:
    """
    Serializes access to the plugin's LightningRpc.

    Waiting for the lock is bounded by rpc_timeout_seconds; a caller that
    cannot get the lock in time gets RPCTimeoutError instead of queuing
    forever behind a hung call.
    """

    def __init__(self, rpc, plugin_instance: Plugin):
        self._rpc = rpc
        self._plugin = plugin_instance

    def __getattr__(self, name):
        attr = getattr(self._rpc, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            timeout = config.rpc_timeout_seconds if config else 15
            if not RPC_LOCK.acquire(timeout=timeout):
                self._plugin.log(f"RPC lock wait exceeded {timeout}s on {name}", level="warn")
                raise RPCTimeoutError(name)
            try:
                return attr(*args, **kwargs)
            finally:
                RPC_LOCK.release()

        return wrapper


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin):
        """Wrap the original plugin with a serialized RPC proxy."""
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc, plugin_instance)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
bridge: Optional[LightningReputationBridge] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='route-confidence-default-confidence',
    default='950000',
    description='Odds (out of 1,000,000) for forwarding nodes with no reputation (default: 950000)'
)

plugin.add_option(
    name='route-confidence-min-route-confidence',
    default='0',
    description='Routes scoring below this are dropped by route-rank (default: 0 = keep all)'
)

plugin.add_option(
    name='route-confidence-reputation-method',
    default='reputation-listnodes',
    description='RPC method returning node/channel/peer reputation (default: reputation-listnodes)'
)

plugin.add_option(
    name='route-confidence-probability-method',
    default='reputation-queryprobability',
    description='RPC method returning single-hop success probability (default: reputation-queryprobability)'
)

plugin.add_option(
    name='route-confidence-probability-unsupported-ttl',
    default='300',
    description='Seconds to remember that the probability method is missing (default: 300)'
)

plugin.add_option(
    name='route-confidence-reason-rules',
    default='',
    description='Failure reason rule overrides, e.g. "FeeInsufficient=edge,ChannelDisabled=edge"'
)

plugin.add_option(
    name='route-confidence-rpc-timeout-seconds',
    default='15',
    description='Max seconds to wait for the shared RPC connection (default: 15)'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the Route Confidence plugin.

    We:
    1. Parse and validate options
    2. Wrap RPC access for concurrent requests
    3. Create the lightningd reputation bridge
    """
    global config, bridge, safe_plugin

    plugin.log("Initializing cl-route-confidence plugin...")

    config = Config(
        default_confidence=int(options['route-confidence-default-confidence']),
        min_route_confidence=int(options['route-confidence-min-route-confidence']),
        reputation_method=options['route-confidence-reputation-method'],
        probability_method=options['route-confidence-probability-method'],
        probability_unsupported_ttl=int(options['route-confidence-probability-unsupported-ttl']),
        reason_rules=options['route-confidence-reason-rules'],
        rpc_timeout_seconds=int(options['route-confidence-rpc-timeout-seconds']),
    )

    try:
        parse_reason_rules(config.reason_rules)
    except ValueError as e:
        plugin.log(f"Ignoring invalid reason rules option: {e}", level='warn')
        config.reason_rules = ''

    plugin.log(f"Configuration loaded: default_confidence={config.default_confidence}, "
               f"reputation_method={config.reputation_method}, "
               f"probability_method={config.probability_method}")

    safe_plugin = ThreadSafePluginProxy(plugin)
    bridge = LightningReputationBridge(safe_plugin, config)

    plugin.log("cl-route-confidence plugin initialized successfully!")


def _engine_error(method: str, payload: Dict[str, Any], error: RouteEngineError) -> RpcError:
    """Convert an engine error into an RpcError for lightning-cli."""
    if safe_plugin:
        safe_plugin.log(f"{method} rejected: {error}", level='debug')
    return RpcError(method, payload, error.to_dict())


def _route_hops(route: Any) -> Any:
    """Accept a bare hop list or a getroute-style {"route": [...]} object."""
    if isinstance(route, dict):
        return route.get("route") or route.get("hops")
    return route


# =============================================================================
# RPC METHODS - Exposed to lightning-cli
# =============================================================================

@plugin.method("route-status")
def route_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the route confidence plugin.

    Usage: lightning-cli route-status
    """
    if config is None or bridge is None:
        return {"error": "Plugin not fully initialized"}

    return {
        "status": "running",
        "config": asdict(config.snapshot()),
        "providers": bridge.get_status()
    }


@plugin.method("route-confidence")
def route_confidence(plugin: Plugin, hops: List[Dict[str, Any]],
                     source: Optional[str] = None) -> Dict[str, Any]:
    """
    Get confidence of successfully routing a payment over hops.

    Each hop is {channel, id, amount_msat} as returned by getroute. If
    source is not set, this node is the source.

    Usage: lightning-cli route-confidence hops='[...]' [source]
    """
    if config is None or bridge is None:
        return {"error": "Plugin not fully initialized"}

    cfg = config.snapshot()
    payload = {"hops": hops, "source": source}
    try:
        parsed = validate_hops(hops)
        source_node = source or bridge.get_node_id()
        reputation = bridge.get_reputation_snapshot()
        estimator = RouteConfidenceEstimator(safe_plugin, cfg)
        result = estimator.estimate(source_node, parsed, reputation, bridge.query_probability)
    except RouteEngineError as e:
        raise _engine_error("route-confidence", payload, e)

    return result.to_dict()


@plugin.method("route-rank")
def route_rank(plugin: Plugin, routes: List[Any], source: Optional[str] = None,
               min_confidence: Optional[int] = None) -> Dict[str, Any]:
    """
    Score candidate routes and return them best first.

    Usage: lightning-cli route-rank routes='[[...], [...]]' [source] [min_confidence]
    """
    if config is None or bridge is None:
        return {"error": "Plugin not fully initialized"}

    cfg = config.snapshot()
    payload = {"routes": routes, "source": source, "min_confidence": min_confidence}
    try:
        candidates = [validate_hops(_route_hops(route)) for route in routes or []]
        floor = None if min_confidence is None else parse_confidence_param("min_confidence", min_confidence)
        if not candidates:
            return {"routes": [], "count": 0}
        source_node = source or bridge.get_node_id()
        reputation = bridge.get_reputation_snapshot()
        estimator = RouteConfidenceEstimator(safe_plugin, cfg)
        ranked = estimator.rank_routes(
            source_node, candidates, reputation, bridge.query_probability, floor
        )
    except RouteEngineError as e:
        raise _engine_error("route-rank", payload, e)

    return {
        "routes": [r.to_dict() for r in ranked],
        "count": len(ranked)
    }


@plugin.method("route-exclusions")
def route_exclusions(plugin: Plugin, reporting_node: Optional[str] = None,
                     reason: Optional[str] = None, hops: Optional[List[Dict[str, Any]]] = None,
                     failing_channel: Optional[str] = None,
                     source: Optional[str] = None) -> Dict[str, Any]:
    """
    Derive what to avoid in the next route search after a failed attempt.

    Returns the exclusion directives plus the equivalent getroute
    `exclude` list.

    Usage:
      lightning-cli route-exclusions reporting_node reason hops [failing_channel]

    Examples:
      lightning-cli route-exclusions -k reporting_node=02ab... \\
          reason=UnknownNextPeer failing_channel=1x1x1 hops='[...]'
    """
    if config is None or bridge is None:
        return {"error": "Plugin not fully initialized"}

    cfg = config.snapshot()
    report = FailureReport(
        reporting_node=reporting_node,
        reason=reason,
        attempted_hops=hops,
        failing_channel=failing_channel,
    )
    payload = {
        "reporting_node": reporting_node,
        "reason": reason,
        "hops": hops,
        "failing_channel": failing_channel,
    }
    try:
        directives = derive_exclusions(report, cfg.rules())
    except RouteEngineError as e:
        raise _engine_error("route-exclusions", payload, e)

    excluded = ExclusionSet(directives)
    if directives:
        plugin.log(
            f"Failure {reason} from {reporting_node[:12]}... mapped to {len(directives)} exclusions",
            level='debug'
        )

    return {
        "exclusions": excluded.to_list(),
        "exclude": excluded.to_getroute_exclude(source or bridge.get_node_id())
    }


@plugin.method("route-config")
def route_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli route-config get           # Get all config
      lightning-cli route-config get <key>     # Get specific key
      lightning-cli route-config set <key> <value>  # Set key
      lightning-cli route-config list-mutable  # List changeable keys

    Examples:
      lightning-cli route-config set min_route_confidence 100000
      lightning-cli route-config set reason_rules FeeInsufficient=edge
    """
    if config is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        if key:
            if not hasattr(config, key) or key.startswith('_'):
                return {"error": f"Unknown config key: {key}"}
            return {
                "key": key,
                "value": getattr(config, key),
                "version": config._version
            }
        return {
            "config": asdict(config.snapshot()),
            "version": config._version
        }

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: route-config set <key> <value>"}

        result = config.update_runtime(key, str(value))

        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )

        return result

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    else:
        return {"error": f"Unknown action: {action}. Use 'get', 'set', or 'list-mutable'"}


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
