"""Error taxonomy for the generation core.

Every error raised by adapters, the poller or the orchestrator derives from
``GenerationError`` so the HTTP layer and the background task can treat them
uniformly. Errors may carry the diagnostic text and external task code an
adapter had gathered before failing.
"""

from __future__ import annotations


class GenerationError(Exception):
    """Base error with optional partial-result fields."""

    def __init__(
        self,
        message: str,
        *,
        text: str = "",
        task_id: str = "",
        request_id: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.text = text
        self.task_id = task_id
        self.request_id = request_id


class InvalidRequestError(GenerationError):
    """Request rejected before any background work starts."""


class NotFoundError(GenerationError):
    """Provider or model id does not exist in the configuration store."""


class DriverUnsupportedError(GenerationError):
    """No adapter constructor is registered for the provider's driver."""

    def __init__(self, driver: str):
        super().__init__(f"unsupported provider driver: {driver}")
        self.driver = driver


class ProviderError(GenerationError):
    """Structured provider error with status code and retriable flag."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        retriable: bool = False,
        **kwargs: str,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retriable = retriable


class NoImageInResponseError(ProviderError):
    """The provider answered, but the response carried no media."""


class TaskFailedError(ProviderError):
    """A provider-side async task ended as failed or cancelled."""


class PollingExhaustedError(GenerationError):
    """The poller used up its attempts before the task reached a terminal state."""


class PollingCancelledError(GenerationError):
    """The poller's stop signal fired before the task reached a terminal state."""


class MediaResolveError(GenerationError):
    """A media reference could not be turned into bytes."""

    def __init__(self, message: str, index: int | None = None):
        super().__init__(message)
        self.index = index
