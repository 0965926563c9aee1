"""
MJML Email Templates
Templates for manager notifications about employer contributions
"""

from typing import Optional

THEME = {
    "primary": "#0f766e",
    "background": "#f8fafc",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
}


def format_cents(value_cents: int) -> str:
    """15000 -> 'R$ 150,00'"""
    formatted = f"{value_cents / 100:,.2f}"
    return "R$ " + formatted.replace(",", "_").replace(".", ",").replace("_", ".")


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
    clinic_name: str = "",
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{cta_url}"
              background-color="{THEME['primary']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{title}</mj-title>
        <mj-preview>{preview_text}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="40px 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {title}
            </mj-text>

            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              {clinic_name}
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def contribution_value_set_template(
    clinic_name: str,
    employer_name: str,
    employer_cnpj: str,
    contribution_type: str,
    competence: str,
    due_date: str,
    value_cents: int,
    invoice_url: Optional[str] = None,
) -> str:
    """Manager notification: an employer set the value of a contribution via the public link"""
    content = f"""
    <mj-text>
      A empresa <strong>{employer_name}</strong> ({employer_cnpj}) informou o valor da contribuição
      e o boleto foi gerado.
    </mj-text>

    <mj-text align="center" font-size="32px" font-weight="700" color="{THEME['text_primary']}" padding="20px 0">
      {format_cents(value_cents)}
    </mj-text>

    <mj-text font-size="14px" color="{THEME['text_muted']}">
      Tipo: {contribution_type}<br/>
      Competência: {competence}<br/>
      Vencimento: {due_date}
    </mj-text>
    """

    return get_base_template(
        title="Valor de contribuição informado",
        preview_text=f"{employer_name} - {contribution_type} {competence}",
        content_sections=content,
        cta_url=invoice_url,
        cta_label="Ver boleto" if invoice_url else None,
        clinic_name=clinic_name,
    )


__all__ = [
    "format_cents",
    "get_base_template",
    "contribution_value_set_template",
]
