class VybesError(Exception):
    """Base error for the control surface; carries the HTTP status it maps to."""

    status_code = 500
    default_detail = "error"

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or self.default_detail

    def to_dict(self) -> dict:
        return {"error": self.message, "detail": self.detail}


class InvalidArgument(VybesError):
    status_code = 400
    default_detail = "invalid_argument"


class NotFound(VybesError):
    status_code = 404
    default_detail = "not_found"


class AlreadyExists(VybesError):
    status_code = 400
    default_detail = "already_exists"


class StoreFailure(VybesError):
    status_code = 500
    default_detail = "store_failure"
