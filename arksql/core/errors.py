"""Typed failures raised by the core components.

Ordinary SQL errors are never raised: the gateway turns them into
``ExecutionResult`` values. These exceptions cover the failures a caller has
to branch on.
"""


class ArkSQLError(Exception):
    """Base class for all arksql errors."""


class EmbeddingFailure(ArkSQLError):
    """The embedding provider failed or returned an unexpected payload."""


class StoreFailure(ArkSQLError):
    """The vector store backend rejected a read or write."""


class IntrospectionError(ArkSQLError):
    """A catalog query against the target database failed."""


class SynthesisError(ArkSQLError):
    """The language model could not produce a candidate query."""


class GatewayConnectionError(ArkSQLError):
    """The gateway could not reach the database (connection-level failure)."""

    def __init__(self, message: str, connection_hint: str = ""):
        super().__init__(message)
        self.connection_hint = connection_hint
