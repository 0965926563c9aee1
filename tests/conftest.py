"""
Shared fixtures: in-memory SQLite database, seeded contributions and a fake
Lytex API served through httpx.MockTransport.
"""

import json
import os
import re
from datetime import date

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.pop("RESEND_API_KEY", None)

import httpx  # noqa: E402
import pytest  # noqa: E402

from unionbilling.database import Base, SessionLocal, engine  # noqa: E402
from unionbilling.domain.contributions.lytex_service import LytexService  # noqa: E402
from unionbilling.models import (  # noqa: E402
    AccountingOfficeEmployer,
    Clinic,
    ContributionStatus,
    ContributionType,
    Employer,
    EmployerContribution,
)

LYTEX_TEST_URL = "https://lytex.test/v2"


class FakeLytexAPI:
    """Minimal in-memory Lytex: token exchange, invoice create/get/cancel"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.invoices: dict[str, dict] = {}
        self.created: list[dict] = []
        self.token_status = 200
        self.create_status = 201
        self.create_body: dict | None = None
        self.cancel_status = 200
        self.patch_status = 200
        self.delete_status = 204
        self.timeout_on: str | None = None

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def requests_to(self, method: str, path_suffix: str) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path.endswith(path_suffix)
        ]

    def set_invoice(self, invoice_id: str, **fields) -> None:
        self.invoices[invoice_id] = {"_id": invoice_id, **fields}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if self.timeout_on and path.endswith(self.timeout_on):
            raise httpx.ReadTimeout("timed out", request=request)

        if request.method == "POST" and path.endswith("/auth/obtain_token"):
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"message": "invalid credentials"})
            return httpx.Response(200, json={"accessToken": "lytex-token", "expiresIn": 3600})

        if request.method == "POST" and path.endswith("/invoices"):
            payload = json.loads(request.content)
            self.created.append(payload)
            if self.create_status >= 300:
                return httpx.Response(self.create_status, json={"message": "CPF/CNPJ inválido"})
            if self.create_body is not None:
                return httpx.Response(self.create_status, json=self.create_body)
            invoice_id = f"inv-{len(self.created)}"
            self.set_invoice(
                invoice_id,
                status="waitingPayment",
                totalValue=payload["items"][0]["value"],
                dueDate=payload["dueDate"],
            )
            return httpx.Response(
                201,
                json={
                    "_id": invoice_id,
                    "linkCheckout": f"https://pay.lytex.test/{invoice_id}",
                    "boleto": {"barCode": "03399000000000", "digitableLine": "03399.00000 00000"},
                    "pix": {"code": "00020126pix", "qrCode": "data:image/png;base64,AAA"},
                },
            )

        match = re.search(r"/invoices/([^/]+)(/cancel)?$", path)
        if match:
            invoice_id, cancel = match.group(1), match.group(2)
            if cancel:
                return httpx.Response(self.cancel_status, json={})
            if request.method == "PATCH":
                return httpx.Response(self.patch_status, json={})
            if request.method == "DELETE":
                return httpx.Response(self.delete_status)
            invoice = self.invoices.get(invoice_id)
            if invoice is None:
                return httpx.Response(404, json={"message": "not found"})
            return httpx.Response(200, json=invoice)

        return httpx.Response(404, json={"message": "unknown route"})


class FakeTokenProvider:
    def __init__(self, token: str = "lytex-token"):
        self.token = token
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        return self.token


class RecordingNotifier:
    def __init__(self):
        self.calls: list[dict] = []

    async def notify_manager(self, **kwargs) -> None:
        self.calls.append(kwargs)


class RecordingAudit:
    def __init__(self):
        self.entries: list[dict] = []

    def log_portal_action(self, **kwargs) -> None:
        self.entries.append(kwargs)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def lytex_api():
    return FakeLytexAPI()


@pytest.fixture
def lytex(lytex_api):
    return LytexService(
        token_provider=FakeTokenProvider(),
        api_url=LYTEX_TEST_URL,
        timeout=5,
        transport=lytex_api.transport,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def clinic(db):
    clinic = Clinic(
        id="clinic-1",
        name="Sindicato dos Comerciários",
        contribution_notification_email="gestor@sindicato.test",
    )
    db.add(clinic)
    db.commit()
    return clinic


@pytest.fixture
def employer(db, clinic):
    employer = Employer(
        id="employer-1",
        clinic_id=clinic.id,
        name="Padaria Pão Quente LTDA",
        cnpj="12.345.678/0001-90",
        email="financeiro@paoquente.test",
        phone="(11) 98765-4321",
    )
    db.add(employer)
    db.add(ContributionType(id="type-1", clinic_id=clinic.id, name="Contribuição Assistencial"))
    db.commit()
    return employer


@pytest.fixture
def make_contribution(db, clinic, employer):
    counter = {"n": 0}

    def _make(**overrides) -> EmployerContribution:
        counter["n"] += 1
        fields = {
            "id": f"contrib-{counter['n']}",
            "clinic_id": clinic.id,
            "employer_id": employer.id,
            "contribution_type_id": "type-1",
            "competence_month": 2,
            "competence_year": 2025,
            "value": 0,
            "status": ContributionStatus.AWAITING_VALUE.value,
            "due_date": date(2025, 3, 10),
            "public_access_token": f"public-token-{counter['n']}",
        }
        fields.update(overrides)
        contribution = EmployerContribution(**fields)
        db.add(contribution)
        db.commit()
        return contribution

    return _make


@pytest.fixture
def make_issued(make_contribution):
    """Contribution already priced and invoiced"""

    def _make(invoice_id: str, value: int = 15000, **overrides) -> EmployerContribution:
        fields = {
            "value": value,
            "status": ContributionStatus.PENDING.value,
            "lytex_invoice_id": invoice_id,
            "lytex_invoice_url": f"https://pay.lytex.test/{invoice_id}",
            "public_access_token": None,
        }
        fields.update(overrides)
        return make_contribution(**fields)

    return _make


@pytest.fixture
def link_accounting_office(db):
    def _link(accounting_office_id: str, employer_id: str) -> None:
        db.add(AccountingOfficeEmployer(accounting_office_id=accounting_office_id, employer_id=employer_id))
        db.commit()

    return _link


@pytest.fixture
def reload(db):
    """Fresh copy of a contribution as stored"""

    def _reload(contribution_id: str) -> EmployerContribution:
        db.expire_all()
        return db.get(EmployerContribution, contribution_id)

    return _reload
