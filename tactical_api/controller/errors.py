# errors.py


class DashboardError(Exception):
    status_code = 500
    error = "Internal error"

    def __init__(self, message, path=None):
        super().__init__(message)
        self.message = message
        self.path = path

    def to_dict(self):
        body = {"error": self.error, "message": self.message}
        if self.path is not None:
            body["path"] = self.path
        return body


class NotFoundError(DashboardError):
    """Missing directory or file."""
    status_code = 404
    error = "Not found"


class ValidationError(DashboardError):
    """Malformed telemetry or request payload."""
    status_code = 400
    error = "Invalid request"


class ParseError(DashboardError):
    """Malformed CSV or JSON content."""
    status_code = 422
    error = "Unparseable content"


class StoreIOError(DashboardError):
    """Transient filesystem failure, including I/O timeouts."""
    status_code = 503
    error = "Storage unavailable"
