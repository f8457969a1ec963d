from typing import Any, Dict, Optional


class TicketdeskError(Exception):
    """Base for every error the workflows raise on purpose."""
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.extra}


class BadRequest(TicketdeskError):
    status_code = 400


class NotFound(TicketdeskError):
    status_code = 404


class InsufficientCapacity(TicketdeskError):
    status_code = 400

    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            "Not enough seats available",
            available=available, requested=requested,
        )
        self.available = available
        self.requested = requested


class CapacityExceeded(TicketdeskError):
    status_code = 409


class NothingToUndo(TicketdeskError):
    status_code = 409


class NoApiKey(TicketdeskError):
    status_code = 400

    def __init__(self, location_id: Optional[str]) -> None:
        super().__init__(f"No API key found for location {location_id}")
        self.location_id = location_id


class UpstreamError(TicketdeskError):
    status_code = 502

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Commerce API failed [{status}]: {body}")
        self.status = status
        self.body = body


class Unknown(TicketdeskError):
    status_code = 500
