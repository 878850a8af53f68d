"""Error kinds raised by the agit registry and its collaborators."""


class AgitError(Exception):
    """Base class for all agit errors."""

    # User errors are expected conditions the caller can fix; they never
    # warrant a bug report.
    user_error = False


class NotFoundError(AgitError):
    """An entity id or name does not exist."""

    user_error = True


class ConflictError(AgitError):
    """Unique-name collision, task already claimed, or a refused merge."""

    user_error = True


class AmbiguousError(ConflictError):
    """An id prefix matches more than one entity."""


class InvalidInputError(AgitError, ValueError):
    """Malformed parameters."""

    user_error = True


class StoreError(AgitError):
    """The registry database could not be opened or a transaction failed."""


def is_user_error(exc: BaseException) -> bool:
    return isinstance(exc, AgitError) and exc.user_error
