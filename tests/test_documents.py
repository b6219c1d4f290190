"""Rendering and storing invoice documents."""

from invoicehub.documents.invoice_pdf import build_invoice_pdf, invoice_document_key, store_invoice_document
from invoicehub.storage.local_provider import LocalStorageProvider


def test_build_pdf(db, worker, add_invoice):
    invoice = add_invoice(worker, "2026001")
    data = build_invoice_pdf(db, invoice)
    assert data.startswith(b"%PDF")


def test_document_key_is_sanitized(db, worker, add_invoice):
    invoice = add_invoice(worker, "VIK-2026001")
    assert invoice_document_key(invoice) == f"invoices/{worker.id}/VIK-2026001.pdf"
    odd = add_invoice(worker, "2026/002 (copy)")
    assert invoice_document_key(odd) == f"invoices/{worker.id}/2026-002-copy.pdf"


def test_store_overwrites_previous_rendering(db, worker, add_invoice, tmp_path):
    storage = LocalStorageProvider(str(tmp_path))
    invoice = add_invoice(worker, "2026001")
    key = store_invoice_document(db, invoice, storage=storage)
    first = storage.get(key)
    assert storage.exists(key)
    assert first.startswith(b"%PDF")

    store_invoice_document(db, invoice, storage=storage)
    assert storage.exists(key)
    assert not (tmp_path / (key + ".tmp")).exists()


def test_local_storage_roundtrip(tmp_path):
    storage = LocalStorageProvider(str(tmp_path))
    storage.put("/invoices/../x/doc.pdf", b"data")
    assert storage.get("invoices/x/doc.pdf") == b"data"
    storage.delete("invoices/x/doc.pdf")
    assert not storage.exists("invoices/x/doc.pdf")
    assert storage.get("invoices/x/doc.pdf") is None
