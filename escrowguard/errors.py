# escrowguard/errors.py
"""Typed errors for the money path.

Guards raise these before any write. Inside ``db.atomic`` they also trigger a
full rollback, so a caller never observes half of a hold/ledger/refund change.
"""


class EscrowError(Exception):
    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthenticated(EscrowError):
    status_code = 401
    code = "UNAUTHORIZED"


class Unauthorized(EscrowError):
    status_code = 403
    code = "FORBIDDEN"


class NotFound(EscrowError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidState(EscrowError):
    status_code = 400
    code = "BAD_REQUEST"


class Conflict(EscrowError):
    status_code = 409
    code = "CONFLICT"


class TransientInfrastructure(EscrowError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
