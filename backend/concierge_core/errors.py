from __future__ import annotations


class ConciergeError(Exception):
    pass


class UpstreamUnavailable(ConciergeError):
    """An external collaborator could not be reached or answered non-2xx."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class PersistenceFailure(ConciergeError):
    pass


class MalformedResponse(ConciergeError):
    pass


class TurnInProgress(ConciergeError):
    pass


class WorkflowError(ConciergeError):
    pass
