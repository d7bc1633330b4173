"""
Studio-side connection logic.

Submodules:
- connection_state: Pure state machine for cloud, relay and stream status.
- discovery: Rendezvous registration and WebRTC calls (aiortc).
- relay_client: Relay WebSocket with bounded media queue.
- reconnect: Fixed-delay reconnect policy.
- studio: Orchestrator that runs state machine actions.
"""
