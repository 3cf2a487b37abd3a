"""Error type shared by every service in the order pipeline.

One exception class, ``OrderError``, with a closed set of kinds. The HTTP
status of an error is a pure function of its kind (``http_status_for``),
optionally overridden for the few Stripe failures that have their own status
(card declined, rate limited, bad credentials).

Services always raise; blueprints translate to JSON.
"""


class ErrorKind:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXTERNAL_SERVICE = "external_service"
    INTERNAL = "internal"

    ALL = (VALIDATION, NOT_FOUND, CONFLICT, EXTERNAL_SERVICE, INTERNAL)


_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.EXTERNAL_SERVICE: 502,
    ErrorKind.INTERNAL: 500,
}

_DEFAULT_CODES = {
    ErrorKind.VALIDATION: "INVALID_DATA",
    ErrorKind.NOT_FOUND: "NOT_FOUND",
    ErrorKind.CONFLICT: "CONFLICT",
    ErrorKind.EXTERNAL_SERVICE: "EXTERNAL_SERVICE",
    ErrorKind.INTERNAL: "INTERNAL_ERROR",
}


def http_status_for(kind):
    """Map an ErrorKind to its HTTP status code (unknown kinds -> 500)."""
    return _STATUS_BY_KIND.get(kind, 500)


class OrderError(Exception):
    """Domain error raised by the order, stock, checkout and webhook services."""

    def __init__(self, kind, message, code=None, details=None, status=None):
        if kind not in ErrorKind.ALL:
            raise ValueError(f"Unknown error kind '{kind}'")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or _DEFAULT_CODES[kind]
        self.details = details
        self._status = status

    @property
    def http_status(self):
        return self._status or http_status_for(self.kind)

    @property
    def is_client_error(self):
        return self.http_status < 500

    def to_dict(self):
        body = {"ok": False, "code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self):
        return f"<OrderError {self.kind}:{self.code} {self.message!r}>"


# --- Convenience constructors ---

def invalid_data(message, details=None, code=None):
    return OrderError(ErrorKind.VALIDATION, message, code=code, details=details)


def not_found(message, details=None):
    return OrderError(ErrorKind.NOT_FOUND, message, details=details)


def conflict(message, code=None, details=None):
    return OrderError(ErrorKind.CONFLICT, message, code=code, details=details)


def external_service(message, details=None, code=None, status=None):
    return OrderError(
        ErrorKind.EXTERNAL_SERVICE, message, code=code, details=details, status=status
    )


def internal_error(message, details=None):
    return OrderError(ErrorKind.INTERNAL, message, details=details)
