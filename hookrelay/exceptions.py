"""
Error types for the webhook dispatcher.

Errors that reach the caller carry an HTTP status code. PayloadParseError
and DeliveryAttemptError are recovered inside the dispatcher and only show
up in logs and the final delivery record.
"""


class WebhookError(Exception):
    """Base class for dispatcher errors reported to the trigger caller."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BadRequestError(WebhookError):
    """The trigger URL did not name a webhook configuration."""

    status_code = 400


class TriggerAuthError(WebhookError):
    """The trigger did not present the configuration's trigger token."""

    status_code = 401


class WebhookNotFoundError(WebhookError):
    """No active configuration exists for the requested id."""

    status_code = 404


class PayloadParseError(Exception):
    """The inbound body could not be parsed for its declared content type."""


class DeliveryAttemptError(Exception):
    """
    A single delivery attempt failed.

    status_code is 0 when no HTTP response was received (transport
    error or timeout). outcome is one of "http_error", "timeout" or
    "transport_error".
    """

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        response_body: str = "",
        outcome: str = "transport_error",
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.outcome = outcome
