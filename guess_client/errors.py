from typing import Any


class GuessItError(Exception): ...


class ValidationError(GuessItError, ValueError): ...


class GuessOutOfRange(ValidationError): ...


class DuplicateGuess(ValidationError): ...


class RoundClosedError(ValidationError): ...


class PurchaseInProgress(ValidationError): ...


class InsufficientFunds(GuessItError, ValueError): ...


class GatewayError(GuessItError):
    """Base for everything the payment gateway client can raise.

    ``status`` is the HTTP status of the gateway response when there was one,
    ``payload`` is whatever error body came back with it.
    """

    def __init__(self, message: str, *, status: int | None = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload


class GatewayTransportError(GatewayError): ...


class GatewayNetworkError(GatewayTransportError): ...


class GatewayProtocolError(GatewayError): ...


class UpstreamMalformed(GatewayProtocolError): ...


class UpstreamRejected(GatewayProtocolError): ...


class Misconfigured(GatewayError): ...
