"""
Error taxonomy shared by the services and the HTTP layer.

Every failure carries a stable `kind`, a human readable message and the
HTTP status the API layer answers with. Extra keys (e.g. `current_status`)
are passed through to the JSON body.
"""


class ServiceError(Exception):
    kind = 'error'
    status_code = 500

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        body = {'error': self.message, 'kind': self.kind}
        body.update(self.extra)
        return body


class NotFound(ServiceError):
    kind = 'not_found'
    status_code = 404


class InvalidState(ServiceError):
    kind = 'invalid_state'
    status_code = 400

    def __init__(self, message, current_status=None, **extra):
        super().__init__(message, current_status=current_status, **extra)
        self.current_status = current_status


class Conflict(ServiceError):
    kind = 'conflict'
    status_code = 409


class Forbidden(ServiceError):
    kind = 'forbidden'
    status_code = 403


class Unavailable(ServiceError):
    kind = 'unavailable'
    status_code = 500


class ProcedureUnavailable(Unavailable):
    """The atomic claim procedure is missing or disabled; the fallback may run."""
    kind = 'procedure_unavailable'
