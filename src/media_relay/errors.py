from .utilities import iso_timestamp


class RelayError(Exception):
    """Base class for failures that surface to the client as a JSON body."""

    status = 500
    code = "PROCESSING_ERROR"

    def __init__(self, message, status=None, code=None, target_url=None, detail=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code
        self.target_url = target_url
        self.detail = detail

    def to_payload(self):
        payload = {"error": self.message, "code": self.code}
        if self.target_url:
            payload["targetUrl"] = self.target_url
        if self.detail:
            payload["message"] = self.detail
        payload["timestamp"] = iso_timestamp()
        return payload


class ValidationError(RelayError):
    """Missing or malformed caller input."""
    status = 400
    code = "INVALID_INPUT"


class UpstreamError(RelayError):
    """The origin answered with a non-success status. Never retried."""
    code = "FETCH_ERROR"

    def __init__(self, message, status, code=None, target_url=None, detail=None):
        super().__init__(message, status=status, code=code, target_url=target_url, detail=detail)


class RelayTimeoutError(RelayError):
    status = 408
    code = "TIMEOUT"


class ProcessingError(RelayError):
    status = 500
    code = "PROCESSING_ERROR"


class ProviderError(RelayError):
    status = 500
    code = "PROVIDER_ERROR"
