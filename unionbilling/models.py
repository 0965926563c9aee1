import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_id():
    """Generate a UUID primary key"""
    return str(uuid.uuid4())


class ContributionStatus(str, enum.Enum):
    """Lifecycle of an employer contribution"""

    AWAITING_VALUE = "awaiting_value"
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PortalType(str, enum.Enum):
    PUBLIC_TOKEN = "public_token"
    EMPLOYER = "employer"
    ACCOUNTING_OFFICE = "accounting_office"


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    # Manager address notified when a value is set through a public link
    contribution_notification_email = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())


class Employer(Base):
    __tablename__ = "employers"

    id = Column(String(36), primary_key=True, default=generate_id)
    clinic_id = Column(String(36), ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    cnpj = Column(String(20), nullable=False)  # CNPJ or CPF, formatted or digits only
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    # Address (sent to Lytex only when complete)
    address_street = Column(String(255), nullable=True)
    address_number = Column(String(20), nullable=True)
    address_complement = Column(String(255), nullable=True)
    address_zone = Column(String(255), nullable=True)  # bairro
    address_city = Column(String(255), nullable=True)
    address_state = Column(String(2), nullable=True)
    address_zip = Column(String(10), nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    clinic = relationship("Clinic")
    contributions = relationship(
        "EmployerContribution", back_populates="employer", cascade="all, delete-orphan"
    )


class ContributionType(Base):
    __tablename__ = "contribution_types"

    id = Column(String(36), primary_key=True, default=generate_id)
    clinic_id = Column(String(36), ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)


class EmployerContribution(Base):
    """One employer's dues for one competence month"""

    __tablename__ = "employer_contributions"

    id = Column(String(36), primary_key=True, default=generate_id)
    clinic_id = Column(String(36), ForeignKey("clinics.id"), nullable=False, index=True)
    employer_id = Column(String(36), ForeignKey("employers.id"), nullable=False, index=True)
    contribution_type_id = Column(String(36), ForeignKey("contribution_types.id"), nullable=True)

    competence_month = Column(Integer, nullable=False)  # 1-12
    competence_year = Column(Integer, nullable=False)

    value = Column(Integer, nullable=False, default=0)  # cents
    status = Column(
        String(30), nullable=False, default=ContributionStatus.AWAITING_VALUE.value, index=True
    )
    due_date = Column(Date, nullable=False)

    # Lytex invoice - all null until issued, written together
    lytex_invoice_id = Column(String(255), nullable=True, index=True)
    lytex_invoice_url = Column(String(500), nullable=True)
    lytex_boleto_barcode = Column(String(255), nullable=True)
    lytex_boleto_digitable_line = Column(String(255), nullable=True)
    lytex_pix_code = Column(Text, nullable=True)
    lytex_pix_qrcode = Column(Text, nullable=True)

    # Payment as reported by Lytex
    paid_at = Column(DateTime, nullable=True)
    paid_value = Column(Integer, nullable=True)  # cents
    payment_method = Column(String(50), nullable=True)

    # Reconciliation
    has_divergence = Column(Boolean, default=False, nullable=False)
    is_reconciled = Column(Boolean, default=False, nullable=False)
    reconciled_at = Column(DateTime, nullable=True)
    reconciled_by = Column(String(255), nullable=True)

    # Unauthenticated access through the public value link
    public_access_token = Column(String(64), nullable=True, unique=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    clinic = relationship("Clinic")
    employer = relationship("Employer", back_populates="contributions")
    contribution_type = relationship("ContributionType")


class AccountingOfficeEmployer(Base):
    """Employers an accounting office may act for"""

    __tablename__ = "accounting_office_employers"
    __table_args__ = (UniqueConstraint("accounting_office_id", "employer_id"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    accounting_office_id = Column(String(36), nullable=False, index=True)
    employer_id = Column(String(36), ForeignKey("employers.id"), nullable=False)


class PortalActionLog(Base):
    """Actions performed through the public, employer and accounting-office portals"""

    __tablename__ = "portal_action_logs"

    id = Column(Integer, primary_key=True, index=True)
    portal_type = Column(String(30), nullable=False)
    portal_id = Column(String(255), nullable=True)
    action = Column(String(50), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())


class LytexSyncLog(Base):
    """Track Lytex synchronization runs"""

    __tablename__ = "lytex_sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(String(36), ForeignKey("clinics.id"), nullable=True, index=True)

    sync_type = Column(String(50), nullable=False)  # sync_all_pending, sync_one
    status = Column(String(20), nullable=False, default="running")  # running, completed, failed

    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    invoices_checked = Column(Integer, default=0)
    invoices_conciliated = Column(Integer, default=0)
    invoices_divergent = Column(Integer, default=0)
    invoices_failed = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)


class LytexConciliationLog(Base):
    """One row per contribution changed by a sync run"""

    __tablename__ = "lytex_conciliation_logs"

    id = Column(Integer, primary_key=True, index=True)
    sync_log_id = Column(Integer, ForeignKey("lytex_sync_logs.id"), nullable=True, index=True)
    contribution_id = Column(String(36), ForeignKey("employer_contributions.id"), nullable=True)
    lytex_invoice_id = Column(String(255), nullable=False)

    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=True)
    lytex_paid_at = Column(DateTime, nullable=True)
    lytex_paid_value = Column(Integer, nullable=True)
    lytex_payment_method = Column(String(50), nullable=True)

    conciliation_result = Column(String(30), nullable=False)  # updated, divergent
    conciliation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
