"""Manager notifications for contribution events"""

import logging
from datetime import date
from typing import Optional

from ...email_service import send_contribution_value_set_email
from .schemas import Payer

logger = logging.getLogger(__name__)


class ManagerNotifier:
    """Fire-and-forget email to the union manager; never raises"""

    async def notify_manager(
        self,
        email: str,
        clinic_name: str,
        employer: Payer,
        contribution_type: str,
        competence: str,
        due_date: date,
        value_cents: int,
        invoice_url: Optional[str],
    ) -> None:
        try:
            await send_contribution_value_set_email(
                to=email,
                clinic_name=clinic_name,
                employer_name=employer.name,
                employer_cnpj=employer.tax_id,
                contribution_type=contribution_type,
                competence=competence,
                due_date=due_date.strftime("%d/%m/%Y"),
                value_cents=value_cents,
                invoice_url=invoice_url,
            )
            logger.info(f"✅ Manager notified at {email} about {employer.name} {competence}")
        except Exception as e:
            logger.error(f"❌ Failed to notify manager {email} about {employer.name} {competence}: {e}")
