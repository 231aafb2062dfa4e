"""
PDF generation service for invoices.
Uses WeasyPrint to convert HTML invoices to PDF format.
"""

import io
import logging
from weasyprint import HTML
from invoice_service import generate_invoice_html
from schemas import InvoiceResponse

logger = logging.getLogger(__name__)


def generate_invoice_pdf(invoice: InvoiceResponse) -> bytes:
    """
    Generate a PDF invoice from the HTML template.

    Returns:
        PDF file as bytes
    """
    try:
        html_content = generate_invoice_html(invoice)

        pdf_buffer = io.BytesIO()
        HTML(string=html_content).write_pdf(pdf_buffer)
        pdf_bytes = pdf_buffer.getvalue()

        logger.info(f"Generated PDF invoice {invoice.invoice_number} ({len(pdf_bytes)} bytes)")
        return pdf_bytes

    except Exception as e:
        logger.error(f"Failed to generate PDF invoice {invoice.invoice_number}: {str(e)}")
        raise
