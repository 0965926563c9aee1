"""
Contributions Domain

Employer contributions (union dues) and their Lytex invoices: setting the
value of an awaiting contribution, issuing the boleto/PIX invoice, pulling
payment status back from Lytex and reconciling paid records.
"""

from .router import router

__all__ = ["router"]
