from .peer_registry import PeerRegistration, PeerRegistry, PeerSocket, RegisterResult

__all__ = ["PeerRegistration", "PeerRegistry", "PeerSocket", "RegisterResult"]
