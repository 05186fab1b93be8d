"""Exceptions raised by the order engine.

Every error carries a stable machine ``code`` the UI can switch on, plus a
human readable message. The HTTP layer maps each class to a status code.
"""


class OrderEngineError(Exception):
    """Base exception for all order engine errors."""

    status_code = 400

    def __init__(self, code: str, message: str | None = None):
        self.code = code
        self.message = message or code.replace("_", " ").capitalize()
        super().__init__(f"{code}: {self.message}")


class ValidationFailed(OrderEngineError):
    """Client-correctable input problem. No state was changed."""

    status_code = 422


class InvalidState(OrderEngineError):
    """Operation not allowed from the order's current state."""

    status_code = 409

    def __init__(self, message: str):
        super().__init__("INVALID_STATE", message)


class NotFound(OrderEngineError):
    status_code = 404

    def __init__(self, what: str, ident):
        self.ident = ident
        super().__init__("NOT_FOUND", f"{what} {ident} not found")


class ExternalServiceError(OrderEngineError):
    """A collaborator (recommender, broker) failed. Order state is unaffected."""

    status_code = 502

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}")
