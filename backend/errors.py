# errors.py — Domain errors with TF-{DOMAIN}-{NUMBER} codes
# Every failed operation surfaces exactly one of these kinds:
# - ValidationError      (input rejected before any store call)
# - AuthorizationError   (role policy denied the action)
# - NotFoundError        (missing, expired or already consumed entity)
# - ConflictError        (uniqueness or state conflict)
# - RemoteUnavailable    (the database could not be reached)

from typing import Optional, Dict, Any

# ============================================================
# ERROR CODE CATALOGUE
# Domains: VAL, AUTH, NF, CONF, SYS
# ============================================================

ERROR_CATALOGUE = {
    # Validation
    "TF-VAL-001": {"message": "Request validation failed", "http_status": 422},
    "TF-VAL-002": {"message": "Password policy violation", "http_status": 422},

    # Authorisation
    "TF-AUTH-001": {"message": "Invalid credentials", "http_status": 401},
    "TF-AUTH-002": {"message": "Insufficient role privileges", "http_status": 403},
    "TF-AUTH-003": {"message": "Not a member of this company", "http_status": 403},

    # Not found
    "TF-NF-001": {"message": "Record not found", "http_status": 404},
    "TF-NF-002": {"message": "Invitation has expired", "http_status": 410},
    "TF-NF-003": {"message": "Password reset token is invalid or expired", "http_status": 404},

    # Conflicts
    "TF-CONF-001": {"message": "Conflicting state", "http_status": 409},
    "TF-CONF-002": {"message": "A pending invitation already exists for this email", "http_status": 409},
    "TF-CONF-003": {"message": "Invitation has already been accepted", "http_status": 409},
    "TF-CONF-004": {"message": "User is already a member", "http_status": 409},

    # System
    "TF-SYS-001": {"message": "Internal server error", "http_status": 500},
    "TF-SYS-002": {"message": "Database temporarily unavailable", "http_status": 503},
}


class TagflowError(Exception):
    """Base class for domain errors raised by lifecycle operations."""

    code = "TF-SYS-001"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **context: Any):
        if code:
            self.code = code
        entry = ERROR_CATALOGUE[self.code]
        self.message = message or entry["message"]
        self.http_status = entry["http_status"]
        self.context: Dict[str, Any] = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(TagflowError):
    code = "TF-VAL-001"


class AuthorizationError(TagflowError):
    code = "TF-AUTH-002"


class NotFoundError(TagflowError):
    code = "TF-NF-001"


class InvitationExpired(NotFoundError):
    code = "TF-NF-002"


class ResetTokenInvalid(NotFoundError):
    code = "TF-NF-003"


class ConflictError(TagflowError):
    code = "TF-CONF-001"


class DuplicateInvitation(ConflictError):
    code = "TF-CONF-002"


class InvitationAlreadyAccepted(ConflictError):
    code = "TF-CONF-003"


class AlreadyMember(ConflictError):
    code = "TF-CONF-004"


class RemoteUnavailable(TagflowError):
    code = "TF-SYS-002"
