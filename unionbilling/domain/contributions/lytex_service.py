"""Lytex service - Integration with the Lytex invoicing API"""

import logging
import re
import time
from datetime import date, datetime
from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from ...config import (
    LYTEX_API_URL,
    LYTEX_CLIENT_ID,
    LYTEX_CLIENT_SECRET,
    LYTEX_TIMEOUT_SECONDS,
)
from .errors import (
    AuthenticationError,
    InvoiceCancellationError,
    InvoiceCreationError,
    InvoiceLookupError,
    ProviderUnavailableError,
)
from .schemas import InvoiceSnapshot, IssuedInvoice, Payer

logger = logging.getLogger(__name__)

# Refresh tokens this many seconds before they expire
TOKEN_EXPIRY_MARGIN_SECONDS = 300


def only_digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        logger.warning(f"Unparseable Lytex datetime: {value!r}")
        return None


def _parse_date(value: Optional[str]) -> Optional[date]:
    parsed = _parse_datetime(value)
    return parsed.date() if parsed else None


class TokenProvider(Protocol):
    async def get_token(self) -> str: ...


class LytexTokenProvider:
    """Client-credential token exchange with an in-memory cache"""

    def __init__(
        self,
        api_url: str = LYTEX_API_URL,
        client_id: Optional[str] = LYTEX_CLIENT_ID,
        client_secret: Optional[str] = LYTEX_CLIENT_SECRET,
        timeout: float = LYTEX_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock=time.time,
    ):
        self.api_url = api_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.transport = transport
        self.clock = clock
        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0

    def has_valid_token(self) -> bool:
        return bool(self._access_token) and self._expires_at > self.clock() + TOKEN_EXPIRY_MARGIN_SECONDS

    async def get_token(self) -> str:
        """Return the cached token, exchanging credentials when it is about to expire"""
        if self.has_valid_token():
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise AuthenticationError("Credenciais Lytex não configuradas")

        logger.info("🔑 Obtaining new Lytex access token")
        now = self.clock()
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url, timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.post(
                    "/auth/obtain_token",
                    json={"clientId": self.client_id, "clientSecret": self.client_secret},
                )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Lytex authentication timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Lytex authentication failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"❌ Lytex authentication rejected: {response.status_code} {response.text}")
            raise AuthenticationError(
                f"Erro de autenticação Lytex: {response.status_code}",
                provider_status=response.status_code,
            )

        data = response.json()
        access_token = data.get("accessToken")
        if not access_token:
            raise AuthenticationError("Lytex did not return an access token")

        self._access_token = access_token
        self._expires_at = now + float(data.get("expiresIn") or 0)
        logger.info("✅ Lytex access token obtained")
        return access_token


class LytexService:
    """Service for Lytex invoice operations"""

    def __init__(
        self,
        token_provider: TokenProvider,
        api_url: str = LYTEX_API_URL,
        timeout: float = LYTEX_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.token_provider = token_provider
        self.api_url = api_url
        self.timeout = timeout
        self.transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self.token_provider.get_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url, timeout=self.timeout, transport=self.transport
            ) as http_client:
                return await http_client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"Lytex {method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Lytex {method} {path} failed: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def build_invoice_payload(
        payer: Payer,
        amount_cents: int,
        due_date: date,
        description: str,
        reference_id: str,
    ) -> dict:
        """Build the POST /invoices body"""
        tax_id = only_digits(payer.tax_id)
        client: dict[str, Any] = {
            "type": "pj" if len(tax_id) == 14 else "pf",
            "name": payer.name,
            "cpfCnpj": tax_id,
        }
        if payer.email:
            client["email"] = payer.email
        cellphone = only_digits(payer.phone)
        if cellphone:
            client["cellphone"] = cellphone

        # Lytex rejects partially filled addresses
        address = payer.address
        if address:
            fields = {
                "street": address.street.strip(),
                "zone": address.zone.strip(),
                "city": address.city.strip(),
                "state": address.state.strip(),
                "zip": only_digits(address.zip),
            }
            if all(fields.values()):
                fields["number"] = (address.number or "").strip() or "S/N"
                if address.complement and address.complement.strip():
                    fields["complement"] = address.complement.strip()
                client["address"] = fields

        return {
            "client": client,
            "items": [{"name": description, "quantity": 1, "value": amount_cents}],
            "dueDate": due_date.isoformat(),
            "paymentMethods": {
                "pix": {"enable": True},
                "boleto": {"enable": True},
                "creditCard": {"enable": False},
            },
            "referenceId": reference_id,
        }

    async def create_invoice(
        self,
        payer: Payer,
        amount_cents: int,
        due_date: date,
        description: str,
        reference_id: str,
    ) -> IssuedInvoice:
        """Create an invoice (boleto + PIX) and return its payment fields"""
        payload = self.build_invoice_payload(payer, amount_cents, due_date, description, reference_id)
        logger.info(f"🧾 Creating Lytex invoice for reference {reference_id} ({amount_cents} cents)")

        response = await self._request("POST", "/invoices", json=payload)
        data = self._json(response)

        if not response.is_success:
            message = data.get("message") or f"Erro ao criar cobrança: {response.status_code}"
            logger.error(f"❌ Lytex invoice creation failed for {reference_id}: {response.status_code} {data}")
            raise InvoiceCreationError(message, provider_status=response.status_code)

        invoice_id = data.get("_id") or data.get("id")
        if not invoice_id:
            logger.error(f"❌ No invoice ID in Lytex response for {reference_id}: {data}")
            raise InvoiceCreationError("Resposta inválida da Lytex", provider_status=response.status_code)

        boleto = data.get("boleto") or {}
        pix = data.get("pix") or {}
        invoice = IssuedInvoice(
            invoice_id=str(invoice_id),
            invoice_url=data.get("linkCheckout") or data.get("linkBoleto") or data.get("invoiceUrl"),
            boleto_barcode=boleto.get("barCode"),
            boleto_digitable_line=boleto.get("digitableLine"),
            pix_code=pix.get("code"),
            pix_qrcode=pix.get("qrCode"),
        )
        logger.info(f"✅ Lytex invoice created: {invoice.invoice_id} for reference {reference_id}")
        return invoice

    async def get_invoice(self, invoice_id: str) -> InvoiceSnapshot:
        """Fetch the current state of an invoice"""
        response = await self._request("GET", f"/invoices/{invoice_id}")
        if not response.is_success:
            logger.error(f"❌ Lytex invoice lookup failed for {invoice_id}: {response.status_code}")
            raise InvoiceLookupError(
                f"Erro ao consultar cobrança: {response.status_code}",
                provider_status=response.status_code,
            )

        data = self._json(response)
        try:
            return InvoiceSnapshot(
                invoice_id=str(data.get("_id") or invoice_id),
                status=data.get("status"),
                total_value=data.get("totalValue"),
                paid_value=data.get("payedValue"),
                paid_at=_parse_datetime(data.get("paidAt")),
                payment_method=data.get("paymentMethod"),
                due_date=_parse_date(data.get("dueDate")),
            )
        except ValidationError as e:
            logger.error(f"❌ Unexpected Lytex payload for invoice {invoice_id}: {data}")
            raise InvoiceLookupError(f"Resposta inválida da Lytex para a cobrança {invoice_id}") from e

    async def cancel_invoice(self, invoice_id: str) -> None:
        """Cancel an invoice, falling back across the endpoints Lytex has exposed"""
        logger.info(f"🚫 Cancelling Lytex invoice {invoice_id}")
        response = await self._request("POST", f"/invoices/{invoice_id}/cancel", json={})

        if response.status_code == 404:
            logger.info("POST /cancel not found, trying PATCH with status")
            response = await self._request(
                "PATCH", f"/invoices/{invoice_id}", json={"status": "cancelled"}
            )

        if response.status_code in (404, 405):
            logger.info("PATCH not supported, trying DELETE")
            response = await self._request("DELETE", f"/invoices/{invoice_id}")

        if not response.is_success:
            logger.error(f"❌ Lytex invoice cancellation failed for {invoice_id}: {response.text}")
            raise InvoiceCancellationError(
                f"Erro ao cancelar cobrança: {response.status_code}",
                provider_status=response.status_code,
            )

        logger.info(f"✅ Lytex invoice {invoice_id} cancelled")


# Process-wide token cache (single credential pair per deployment)
lytex_token_provider = LytexTokenProvider()
