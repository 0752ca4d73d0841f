from __future__ import annotations

from typing import Optional


class DployError(RuntimeError):
    pass


class BackplaneError(DployError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"backplane {action}: {detail}")
        self.action = action
        self.detail = detail


class TransportError(BackplaneError):
    """Network failure or a non-success HTTP status from the routing plane."""

    def __init__(self, action: str, detail: str, *, status: Optional[int] = None) -> None:
        super().__init__(action, detail)
        self.status = status


class AuthError(TransportError):
    pass


class ConflictError(TransportError):
    pass


class ProtocolError(BackplaneError):
    pass


class RolloutError(DployError):
    pass


class NoIncumbentRouteError(RolloutError):
    def __init__(self, pattern: str) -> None:
        super().__init__(f"no route at weight 100 under endpoint {pattern!r}")
        self.pattern = pattern


class InvalidPlanError(RolloutError):
    pass


class Cancelled(RolloutError):
    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class DeadlineExceeded(Cancelled):
    pass


class OrchestratorError(DployError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class OrchestratorUnavailableError(OrchestratorError):
    pass


class OrchestratorConflictError(OrchestratorError):
    pass
