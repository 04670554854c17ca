# errors.py
"""
Error taxonomy shared by the ingestion pipeline and the HTTP layer.

Every error carries the HTTP status it maps to; api.py renders them as
{"error": ..., "message": ..., "details": ...}.
"""

from typing import Any, Dict, Optional


class MetricsError(Exception):
    status_code = 500

    def __init__(
        self,
        error: str,
        message: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(error)
        self.error = error
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error}
        if self.message is not None:
            body["message"] = self.message
        if self.details is not None:
            body["details"] = self.details
        return body


# 400s

class ValidationError(MetricsError):
    status_code = 400


class BadRequest(ValidationError):
    pass


class NoFileUploaded(ValidationError):
    def __init__(self):
        super().__init__("No file uploaded")


class DuplicateColumn(ValidationError):
    def __init__(self, columns):
        names = ", ".join(columns)
        super().__init__(
            f"Duplicate column name(s) in CSV header: {names}",
            message="Rename the duplicated columns and upload again.",
        )
        self.columns = list(columns)


class PayloadTooLarge(ValidationError):
    def __init__(self, limit_bytes: int):
        mb = limit_bytes / (1024 * 1024)
        super().__init__(f"File exceeds the {mb:.0f}MB upload limit")
        self.limit_bytes = limit_bytes


# 404s

class NotFoundError(MetricsError):
    status_code = 404


class TableNotFound(NotFoundError):
    def __init__(self):
        super().__init__("No data available. Please upload a file first.")


# 409

class ConflictingIngestion(MetricsError):
    status_code = 409

    def __init__(self):
        super().__init__(
            "Another upload is already in progress",
            message="Wait for the current upload to finish and try again.",
        )


# 500s

class StorageError(MetricsError):
    status_code = 500


class CsvParseError(StorageError):
    pass


# 504

class IngestionTimeout(MetricsError):
    status_code = 504

    def __init__(self, timeout: float, rows_committed: int):
        super().__init__(
            f"Upload timed out after {timeout:.0f}s",
            message=f"{rows_committed} rows were committed before the timeout.",
        )
        self.rows_committed = rows_committed
