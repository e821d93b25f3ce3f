import enum
from typing import Any


class ErrorType(enum.Enum):
    ENTITY_NOT_FOUND = "entity_not_found"
    IDENTITY_COLLISION = "identity_collision"
    INVALID_DATA = "invalid_data"
    INVALID_STATE = "invalid_state"
    MALFORMED_REMOTE_ITEM = "malformed_remote_item"
    MUTATION_REJECTED = "mutation_rejected"
    PERSISTENCE_FAILURE = "persistence_failure"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    UNSPECIFIED = "unspecified"


class BaseError(Exception):
    extra: dict[str, Any]

    # Only IdentityCollisionError breaks a core assumption; everything else can be handled locally.
    recoverable: bool = True

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNSPECIFIED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.extra = {key: value for key, value in kwargs.items() if value is not None}

    def __str__(self) -> str:
        return f"error: {self.error_type.value}; description: {self.message}"


class TransportUnavailableError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.TRANSPORT_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class MalformedRemoteItemError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.MALFORMED_REMOTE_ITEM,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class MutationRejectedError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.MUTATION_REJECTED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class PersistenceFailureError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PERSISTENCE_FAILURE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class IdentityCollisionError(BaseError):
    recoverable = False

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.IDENTITY_COLLISION,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class EntityNotFoundError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ENTITY_NOT_FOUND,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class InvalidDataError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_DATA,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)


class InvalidStateError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_STATE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, **kwargs)
