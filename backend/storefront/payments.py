"""
Manual payments: proof uploads and UPI payment links.

Customers pay outside the storefront (UPI / Paytm / Google Pay / QR) and may
attach a screenshot of the transfer at checkout. Only the stored file's
reference path is kept on the order; an admin later verifies the payment.
"""

import os
import re
import time
from urllib.parse import quote

from storefront import config
from storefront.errors import InvalidUpload

ALLOWED_PROOF_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".pdf"}

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    name = os.path.basename(filename or "").strip()
    name = _UNSAFE.sub("_", name).lstrip(".")
    return name or "upload"


def read_upload(fileobj, limit: int, label: str = "Upload") -> bytes:
    """
    Read an upload stream, never holding more than ``limit + 1`` bytes.

    Raises:
        InvalidUpload: the stream holds more than ``limit`` bytes
    """
    data = fileobj.read(limit + 1)
    if len(data) > limit:
        raise InvalidUpload(f"{label} exceeds {limit} bytes")
    return data


def save_proof(filename: str, data: bytes, upload_dir: str = None) -> str:
    """
    Write an uploaded proof to the upload directory.

    Returns the public reference path, e.g. ``/uploads/proof_1718000000000_receipt.png``.

    Raises:
        InvalidUpload: empty, too large, or not an image/PDF
    """
    upload_dir = upload_dir or config.UPLOAD_DIR
    name = safe_filename(filename)
    extension = os.path.splitext(name)[1].lower()

    if not data:
        raise InvalidUpload("Payment proof file is empty")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise InvalidUpload(f"Payment proof exceeds {config.MAX_UPLOAD_BYTES} bytes")
    if extension not in ALLOWED_PROOF_EXTENSIONS:
        raise InvalidUpload("Payment proof must be an image or PDF")

    stored = f"proof_{int(time.time() * 1000)}_{name}"
    os.makedirs(upload_dir, exist_ok=True)
    with open(os.path.join(upload_dir, stored), "wb") as fh:
        fh.write(data)
    return f"/uploads/{stored}"


def upi_url(order_number: str, amount, upi_id: str = None, payee: str = None) -> str:
    """UPI deep link (NPCI format) that payment apps open pre-filled."""
    upi_id = upi_id or config.UPI_ID
    payee = payee or config.UPI_PAYEE_NAME
    return (
        f"upi://pay?pa={quote(upi_id)}&pn={quote(payee)}&am={amount}"
        f"&cu={config.CURRENCY}&tn={quote('Order ' + order_number)}"
    )


def discard_proof(reference: str, upload_dir: str = None) -> None:
    """Remove a stored proof whose checkout did not go through."""
    if not reference:
        return
    path = os.path.join(upload_dir or config.UPLOAD_DIR, os.path.basename(reference))
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
