# facts/errors.py
"""
Error taxonomy for the fact server.

Each error knows its HTTP status and the short machine code that goes in
the "error" field of the JSON body. The app installs one handler that turns
any FactsError into a JSON response; anything else becomes internal_error.
"""

NO_STORE_HEADERS = {
    "Cache-Control": "no-store",
    "Content-Type": "application/json",
}


class FactsError(Exception):
    status_code = 500
    error = "internal_error"

    def __init__(self, message=None, **extra):
        super().__init__(message or self.error)
        self.message = message
        self.extra = extra

    def to_body(self) -> dict:
        body = {"error": self.error}
        if self.message:
            body["message"] = self.message
        body.update(self.extra)
        return body


class Misconfigured(FactsError):
    """Required settings are missing. Raised before any network call."""

    status_code = 500
    error = "Server misconfiguration"

    def __init__(self, missing):
        super().__init__(f"Missing required environment variables: {', '.join(missing)}")
        self.missing = list(missing)

    def to_body(self) -> dict:
        return {"error": self.error, "missingEnv": self.missing}


class BadRequest(FactsError):
    status_code = 400
    error = "missing_ticker_param"


class CacheUnavailable(FactsError):
    status_code = 500
    error = "fact_cache_unavailable"


class NotFound(FactsError):
    status_code = 404
    error = "fact_not_found"


class SettleRejected(FactsError):
    """Facilitator declined the payment; status, body and headers pass through."""

    error = "settle_failed"

    def __init__(self, status_code, body, headers=None):
        super().__init__(f"payment rejected with status {status_code}")
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})

    def to_body(self) -> dict:
        return self.body


class SettleTransportError(FactsError):
    status_code = 500
    error = "settle_exception"


class UpstreamError(FactsError):
    status_code = 502
    error = "upstream_error"


class InvalidPaymentHeader(FactsError):
    status_code = 402
    error = "invalid_payment_header"


class AttestationReadError(FactsError):
    status_code = 500
    error = "attestation_read_failed"


class InternalError(FactsError):
    status_code = 500
    error = "internal_error"
