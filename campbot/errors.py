TRANSIENT_TRANSPORT_MARKERS = (
    "socket closed",
    "ip discovery",
    "econnreset",
    "connection reset",
    "cannot perform operation: another operation is in progress",
)


class CampbotError(Exception):
    pass


class ConflictError(CampbotError):
    """A leader already has a scheduled or active workshop."""


class NotFoundError(CampbotError):
    """No workshop with that id is in the state the operation needs."""


class TransportError(CampbotError):
    """Voice connection could not be established or was lost."""


class DeliveryError(CampbotError):
    """A notification or report could not be sent."""


class PersistenceError(CampbotError):
    """The workshop store is unavailable or rejected a write."""


def is_transient_transport_error(exc: BaseException) -> bool:
    if isinstance(exc, (ConnectionResetError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_TRANSPORT_MARKERS)


def is_destroyed_connection_crash(exc: BaseException | None) -> bool:
    # Voice internals touching a connection that was already torn down.
    if not isinstance(exc, AttributeError):
        return False
    return "'NoneType' object has no attribute" in str(exc)
