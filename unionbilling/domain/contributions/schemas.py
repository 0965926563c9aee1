"""Contribution billing schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, field_validator

# ============================================================================
# LYTEX WIRE SHAPES (normalized)
# ============================================================================


class PayerAddress(BaseModel):
    street: str
    number: str = "S/N"
    complement: Optional[str] = None
    zone: str
    city: str
    state: str
    zip: str


class Payer(BaseModel):
    """Who the invoice is issued to"""

    name: str
    tax_id: str  # CNPJ or CPF, any formatting
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[PayerAddress] = None


class IssuedInvoice(BaseModel):
    """Fields kept from a successful invoice creation"""

    invoice_id: str
    invoice_url: Optional[str] = None
    boleto_barcode: Optional[str] = None
    boleto_digitable_line: Optional[str] = None
    pix_code: Optional[str] = None
    pix_qrcode: Optional[str] = None


class InvoiceSnapshot(BaseModel):
    """Invoice state as reported by Lytex"""

    invoice_id: str
    status: Optional[str] = None
    total_value: Optional[int] = None  # cents
    paid_value: Optional[int] = None  # cents
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    due_date: Optional[date] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


# ============================================================================
# HTTP REQUESTS / RESPONSES
# ============================================================================


class SetValueRequest(BaseModel):
    """Body of the set-value endpoint used by every portal"""

    contribution_id: Optional[str] = None
    value: Optional[Union[int, float]] = None  # cents
    portal_type: Optional[str] = None  # "public_token" | "employer" | "accounting_office"
    portal_id: Optional[str] = None


class SetValueResponse(BaseModel):
    success: bool = True
    lytex_invoice_url: Optional[str] = None
    message: str = "Valor definido e boleto gerado com sucesso!"


class SyncRequest(BaseModel):
    clinic_id: str


class SyncResponse(BaseModel):
    updated: int
    checked: int = 0
    divergent: int = 0
    failed: int = 0
    sync_log_id: Optional[int] = None


class SyncOneResponse(BaseModel):
    changed: bool
    status: str
    has_divergence: bool


class ReconcileBatchRequest(BaseModel):
    contribution_ids: list[str]

    @field_validator("contribution_ids")
    @classmethod
    def validate_ids(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("contribution_ids must not be empty")
        return v


class ReconcileResponse(BaseModel):
    reconciled: int


class PendingReconciliationResponse(BaseModel):
    contribution_ids: list[str]
