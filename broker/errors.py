from __future__ import annotations


class BrokerError(RuntimeError):
    status_code = 400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class DecodeError(BrokerError):
    """The opaque state could not be turned back into an authorization request."""


class ApprovalDenied(BrokerError):
    status_code = 403

    def __init__(self, message: str = "Authorization denied.") -> None:
        super().__init__(message)


class UpstreamExchangeError(BrokerError):
    """The provider's token endpoint refused the grant.

    ``body`` is safe to hand back to a browser: it never contains the
    upstream response verbatim, only the provider's ``error`` code when it
    sent one.
    """

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(body, status_code=status_code)
        self.body = body


class UpstreamProfileError(BrokerError):
    status_code = 502


class RefreshError(BrokerError):
    status_code = 502


class ConfigurationError(BrokerError):
    status_code = 500
