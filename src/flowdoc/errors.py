"""Error taxonomy for FlowDoc.

Validator and store outcomes are returned as data (Findings, SyncResult). The
exceptions here are for conditions that genuinely cannot be expressed that way;
the dispatcher is the only place that catches them wholesale.
"""


class FlowdocError(Exception):
    """Base class for all FlowDoc errors."""


class SchemaError(FlowdocError):
    """Input does not match the expected shape."""


class WorkflowFormatError(SchemaError):
    """A submitted workflow description could not be parsed."""


class CatalogDataError(SchemaError):
    """A catalog data asset is malformed."""


class StoreError(FlowdocError):
    """Knowledge store failure. Always recoverable by retrying sync()."""

    retryable = True


class TransportError(FlowdocError):
    """Malformed envelope or protocol misuse on the request stream."""

    def __init__(self, code: int, message: str, data: object | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class UpstreamError(FlowdocError):
    """The automation platform API returned non-2xx or did not answer in time.

    5xx responses and timeouts are retryable, 4xx responses are terminal.
    Retrying is the caller's decision.
    """

    def __init__(self, message: str, status: int | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.status = status
        if retryable is None:
            retryable = status is None or status >= 500
        self.retryable = retryable

    @property
    def category(self) -> str:
        return "retryable" if self.retryable else "terminal"


class PlatformNotConfiguredError(FlowdocError):
    """Platform tools were called without N8N_API_URL configured."""
