"""
Domain errors raised by the invoicing services.

Routes translate these into HTTP responses; the invoice generation
orchestrator converts them into a ``GenerationResult``.
"""


class InvoiceGenerationError(Exception):
    code = "invoice_error"
    http_status = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(InvoiceGenerationError):
    code = "validation_error"
    http_status = 422


class NotFoundError(InvoiceGenerationError):
    code = "not_found"
    http_status = 404


class PermissionDeniedError(InvoiceGenerationError):
    code = "forbidden"
    http_status = 403


class DuplicateInvoiceError(InvoiceGenerationError):
    """An active invoice already exists for the biller and work period."""
    code = "duplicate_invoice"
    http_status = 409


class NumberConflictError(InvoiceGenerationError):
    """The allocated invoice number was taken by a concurrent insert."""
    code = "number_conflict"
    http_status = 409


class PersistenceError(InvoiceGenerationError):
    code = "persistence_error"
    http_status = 500


class DocumentGenerationError(InvoiceGenerationError):
    code = "document_error"
    http_status = 500
