"""
Error taxonomy shared by the services and the HTTP layer.
"""


class UniclaimError(Exception):
    """Base error carrying a machine readable code and an HTTP status"""
    code = 'UNICLAIM_ERROR'
    status_code = 500

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self):
        return {'success': False, 'error': self.message, 'code': self.code}


class ValidationError(UniclaimError):
    """Missing or malformed input. Raised before any side effect."""
    code = 'VALIDATION_ERROR'
    status_code = 400


class UploadError(UniclaimError):
    """The media store rejected or failed an upload"""
    code = 'UPLOAD_FAILED'
    status_code = 502

    def __init__(self, message: str, failed_files=None, code: str = None, status_code: int = None):
        super().__init__(message, code, status_code)
        self.failed_files = list(failed_files or [])

    def to_dict(self):
        data = super().to_dict()
        data['failed_files'] = self.failed_files
        return data


class ConflictError(UniclaimError):
    code = 'CONFLICT'
    status_code = 409


class InvalidTransitionError(ConflictError):
    code = 'INVALID_TRANSITION'


class NotFoundError(UniclaimError):
    """A referenced post, conversation or message no longer exists"""
    code = 'NOT_FOUND'
    status_code = 404


class PermissionDeniedError(UniclaimError):
    code = 'PERMISSION_DENIED'
    status_code = 403
