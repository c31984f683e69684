"""
Custom Exceptions for StudySync
===============================

Every collaborator failure is raised as one of these so the HTTP layer,
the live feeds and the dashboard can tell them apart:

    from exceptions import QueryPreconditionError

    try:
        docs = store.query(spec)
    except QueryPreconditionError as e:
        logger.warning(f"Missing index: {e}")
"""

from typing import Optional, Any, Dict, List


class StudySyncError(Exception):
    """Base exception for all StudySync errors"""

    status_code = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Configuration
# ============================================

class ConfigurationError(StudySyncError):
    """The document store was never initialized"""

    status_code = 503

    def __init__(self, message: str = (
        "The application is not connected to the database. "
        "Set DATABASE_URL and DATABASE_NAME and restart the server."
    )):
        super().__init__(message, code="CONFIGURATION_ERROR")


# ============================================
# Validation Errors
# ============================================

class FormValidationError(StudySyncError):
    """Local form check failed; nothing was sent to the store"""

    status_code = 422

    def __init__(self, field_errors: Dict[str, List[str]]):
        super().__init__(
            "Please correct the highlighted fields.",
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors}
        )
        self.field_errors = field_errors


class RecordDecodeError(StudySyncError):
    """A stored document does not match its record type"""

    def __init__(self, collection: str, doc_id: Optional[str], errors: List[str]):
        super().__init__(
            f"Document '{doc_id}' in '{collection}' has an unexpected shape",
            code="RECORD_DECODE_FAILED",
            details={"collection": collection, "doc_id": doc_id, "errors": errors}
        )


# ============================================
# Document Store Errors
# ============================================

class QueryError(StudySyncError):
    """A read against the document store failed"""

    status_code = 502

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message, code="QUERY_FAILED")
        if collection:
            self.details["collection"] = collection


class QueryPreconditionError(QueryError):
    """The query needs server-side setup (usually an index) that is missing"""

    status_code = 412

    MISSING_INDEX = (
        "This query requires a database index that does not exist yet. "
        "Create the index (or start the server with CREATE_INDEXES_ON_STARTUP=true), "
        "wait for it to build, then refresh."
    )

    def __init__(self, collection: str, reason: str = "", message: Optional[str] = None):
        super().__init__(message or self.MISSING_INDEX, collection=collection)
        self.code = "QUERY_PRECONDITION_FAILED"
        if reason:
            self.details["reason"] = reason


class WriteError(StudySyncError):
    """A create or update against the document store failed"""

    status_code = 502

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message, code="WRITE_FAILED")
        if collection:
            self.details["collection"] = collection


class DoubtNotFoundError(StudySyncError):
    """Doubt not found"""

    status_code = 404

    def __init__(self, doubt_id: str):
        super().__init__(
            f"Doubt with ID '{doubt_id}' not found",
            code="DOUBT_NOT_FOUND",
            details={"doubt_id": doubt_id}
        )


# ============================================
# Authentication & Authorization Errors
# ============================================

class AuthenticationError(StudySyncError):
    """User authentication failed"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_FAILED")


class EmailInUseError(AuthenticationError):
    """An account already exists for this email"""

    status_code = 409

    def __init__(self, email: str):
        super().__init__("This email is already registered. Please try logging in instead.")
        self.code = "EMAIL_IN_USE"
        self.details["email"] = email


class WeakCredentialError(AuthenticationError):
    """Password does not meet the minimum strength"""

    status_code = 400

    def __init__(self, min_length: int):
        super().__init__(f"The password is too weak. Please use at least {min_length} characters.")
        self.code = "WEAK_CREDENTIAL"
        self.details["min_length"] = min_length


class InvalidCredentialError(AuthenticationError):
    """Email and password do not match an account"""

    def __init__(self):
        super().__init__("Please check your credentials and try again.")
        self.code = "INVALID_CREDENTIAL"


class NotAuthorizedError(StudySyncError):
    """User not allowed to perform this action"""

    status_code = 403

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message, code="NOT_AUTHORIZED")


class PartialSignupError(StudySyncError):
    """The account was created but the profile document could not be saved"""

    def __init__(self, session: Any, cause: StudySyncError):
        super().__init__(
            "Signup incomplete. Your account was created, but we could not save your profile.",
            code="PROFILE_SAVE_FAILED",
            details={"uid": session.identity.uid, "cause": cause.to_dict()}
        )
        self.session = session
        self.cause = cause


def error_response(error: StudySyncError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
