import uuid

from fastapi import HTTPException

from ..documents.invoice_pdf import store_invoice_document
from ..services.errors import InvoiceGenerationError


def parse_uuid(value: str, label: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid {label}")


def http_error(e: InvoiceGenerationError) -> HTTPException:
    return HTTPException(status_code=e.http_status, detail=e.message)


def get_renderer():
    """Document renderer used after an invoice is committed; overridden in tests."""
    return store_invoice_document
