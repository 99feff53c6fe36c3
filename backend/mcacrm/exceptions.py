"""Domain errors raised by services and converted to JSON responses in main."""

from typing import Any, Dict, List, Optional

from fastapi import status


class CRMError(Exception):
    """Base error carrying an HTTP status and extra response fields."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, **self.extra}


class NotFound(CRMError):
    status_code = status.HTTP_404_NOT_FOUND


class ConversationNotFound(NotFound):
    def __init__(self, ref: Any):
        super().__init__("Conversation not found", conversation_id=str(ref))


class ValidationFailed(CRMError):
    """Missing or malformed input; names the offending fields."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, fields: Optional[List[str]] = None, **extra: Any):
        super().__init__(message, fields=fields or [], **extra)
        self.fields = fields or []


class PreconditionFailed(ValidationFailed):
    """The target record is not ready for the requested operation."""

    def __init__(self, message: str, missing_fields: List[str]):
        super().__init__(message, fields=missing_fields, missing_fields=missing_fields)
        self.missing_fields = missing_fields


class FieldMappingError(CRMError):
    """A write referenced a column the database does not have."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, problematic_field: Optional[str], problematic_table: Optional[str]):
        super().__init__(
            message,
            problematicField=problematic_field,
            problematicTable=problematic_table,
        )
        self.problematic_field = problematic_field
        self.problematic_table = problematic_table


class ExternalServiceError(CRMError):
    """An external dependency (carrier, storage, OCR, LLM) failed."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}", service=service)
        self.service = service


class FCSGenerationError(CRMError):
    """FCS report generation could not produce a report."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
