class AppError(Exception):
    """Base class for all application exceptions."""
    def __init__(self, message: str, status_code: int = 500, details: dict = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

class SchedulerError(AppError):
    """Raised when a timetable request cannot be applied to the current grid."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=400, details=details)

class ResourceNotFoundError(AppError):
    """Raised when a requested resource is not found."""
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with id {resource_id} not found",
            status_code=404,
            details={"resource_type": resource_type, "resource_id": resource_id},
        )

class SlotConflictError(AppError):
    """Raised when a manual slot edit would double-book a teacher."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, status_code=409, details=details)

class AuthenticationError(AppError):
    """Raised when the bearer token is missing, invalid or names an unknown user."""
    def __init__(self, message: str = "Could not validate credentials"):
        super().__init__(message, status_code=401)
        self.headers = {"WWW-Authenticate": "Bearer"}

class PermissionDeniedError(AppError):
    """Raised when the caller's role or school does not allow the request."""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)
