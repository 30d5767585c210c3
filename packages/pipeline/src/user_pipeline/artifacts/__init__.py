from .store import ArtifactPayload, ArtifactRef, ArtifactStore, SlotState

__all__ = ["ArtifactPayload", "ArtifactRef", "ArtifactStore", "SlotState"]
