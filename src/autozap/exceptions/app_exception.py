from typing import Optional, Dict, List

class AppException(Exception):
    """
    This is the base exception for all service exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

    def __str__(self) -> str:
        return self.message

class ValidationException(AppException):
    """
    Raised when a payload or a workflow graph fails validation
    """
    def __init__(self, message: str, fields: Optional[Dict[str, List[str]]] = None):
        self.fields = fields or {}
        super().__init__(message=message, status_code=400)

class NotFoundException(AppException):
    """
    Raised when a record does not exist or belongs to another tenant
    """
    def __init__(self, resource: str = "Resource"):
        super().__init__(message=f"{resource} not found", status_code=404)

class ConflictException(AppException):
    def __init__(self, message: str):
        super().__init__(message=message, status_code=409)

class ExternalServiceException(AppException):
    """
    Raised when a call to a third party API (WhatsApp Cloud API, OpenAI) fails
    """
    def __init__(self, service: str, message: str, status_code: int = 502):
        self.service = service
        super().__init__(message=f"Error communicating with {service}: {message}", status_code=status_code)

class DBException(AppException):
    """
    This is the exception for all database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class TranscriptionException(AppException):
    """
    Carries the HTTP status already classified from the transcription error
    """
    def __init__(self, message: str, status_code: int):
        super().__init__(message=message, status_code=status_code)
