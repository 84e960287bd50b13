"""Error taxonomy shared by the graph engine, the HTTP API and the MCP tools."""


class GraphMemoryError(Exception):
    """Base class for all graph memory failures."""


class NotFoundError(GraphMemoryError):
    """A referenced entity, observation, relation, target or parent does not exist."""


class ValidationFailedError(GraphMemoryError):
    """A required field is blank or a uniqueness rule would be broken."""


class OperationFailedError(GraphMemoryError):
    """The store refused a write (delete blocked, constraint violated mid-transaction)."""


class InternalError(GraphMemoryError):
    """Anything unexpected."""
