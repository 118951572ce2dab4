"""
Failure taxonomy for the records service.

Every error carries a fixed, non-leaking ``detail`` message that the HTTP
layer returns verbatim. Internal context (emails, paths, ids) goes in the
log line, never in ``detail``.
"""


class MedivaultError(Exception):
    detail = "Request failed"

    def __init__(self, detail=None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class DuplicateEmail(MedivaultError):
    detail = "Email already registered"


class InvalidCredentials(MedivaultError):
    detail = "Invalid email or password"


class UnknownPatient(MedivaultError):
    detail = "Unknown patient ID"


class NotFound(MedivaultError):
    detail = "Not found"


class ValidationFailed(MedivaultError):
    detail = "Invalid request"


class StorageFailure(MedivaultError):
    detail = "Failed to store or read attachment"


class OrphanedAttachment(MedivaultError):
    """A blob was written but its record row never committed.

    Non-fatal: logged by the record creation path, never raised to callers.
    """
    detail = "Attachment stored without a record"

    def __init__(self, stored_name):
        self.stored_name = stored_name
        super().__init__(f"Attachment {stored_name} stored without a record")
