"""
Exceptions for dispatch-core.

Ordinary control flow (circuit open, duplicate delivery, send failure,
persistence outage) is reported through returned outcome types, never
raised. The exceptions here cover store failures (converted by the
components into fail-closed outcomes) and caller mistakes.
"""


class DispatchError(Exception):
    """Base error for dispatch-core."""

    pass


class PersistenceUnavailableError(DispatchError):
    """The persistence store could not be reached or did not answer."""

    pass


class QueueFullError(DispatchError):
    """Raised by JobQueue when full and overflow strategy is 'error'."""

    pass


class UnknownTemplateError(DispatchError, KeyError):
    """A job referenced a template id the PayloadBuilder does not know."""

    def __init__(self, template_id: str):
        super().__init__(template_id)
        self.template_id = template_id

    def __str__(self) -> str:
        return f"unknown template: {self.template_id!r}"


def map_store_error(e: Exception) -> DispatchError:
    """Translate driver/pool errors into PersistenceUnavailableError.

    Any psycopg error (connection loss, but also a rejected statement or
    value) leaves the stored state unknown to the caller, so all of them
    map to PersistenceUnavailableError and the components fail closed.
    """
    import psycopg
    from psycopg_pool import PoolTimeout

    if isinstance(e, DispatchError):
        return e
    if isinstance(e, (psycopg.Error, PoolTimeout)):
        return PersistenceUnavailableError(str(e))
    if isinstance(e, (OSError, TimeoutError)):
        return PersistenceUnavailableError(str(e))
    return DispatchError(str(e))
