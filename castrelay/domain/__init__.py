"""
Domain layer containing the relay's core logic.

Submodules:
- room: Room codes and discovery identities.
- relay: Session registry, session state machine and relay message handling.
- rendezvous: Self-hosted peer discovery registry.
- transcode: ffmpeg command lines and process supervision.
- utils: Domain-specific utilities (e.g., ID generation).
"""
