from typing import Any, Dict, Optional


class IndexerException(Exception):
    def __init__(self, message: str, retryable: bool = False, stage: Optional[str] = None, detail: Any = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.stage = stage
        self.detail = detail


class ConfigurationError(IndexerException):
    pass


class DataSourceError(IndexerException):
    pass


class DocumentStoreError(IndexerException):
    def __init__(
        self,
        message: str,
        retryable: bool = False,
        stage: Optional[str] = None,
        detail: Any = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, retryable=retryable, stage=stage, detail=detail)
        self.status_code = status_code


class ClearIndexError(IndexerException):
    pass


class MissingFieldError(IndexerException):
    def __init__(self, field: str, doc_key: Any = None) -> None:
        super().__init__(f"required field {field} is null (key={doc_key})", stage="ASSEMBLE")
        self.field = field
        self.doc_key = doc_key


def to_error_payload(exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, IndexerException):
        return {
            "type": type(exc).__name__,
            "message": str(exc),
            "retryable": exc.retryable,
            "stage": exc.stage,
            "detail": exc.detail,
        }
    return {"type": type(exc).__name__, "message": str(exc), "retryable": False}
