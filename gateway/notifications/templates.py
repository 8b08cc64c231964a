"""
Email templates.

Each message has an HTML and a plain-text variant kept in-package and
rendered through one jinja2 Environment. HTML templates are autoescaped;
missing variables fail loudly.
"""

from typing import Any

from jinja2 import DictLoader, Environment, StrictUndefined, select_autoescape

_BASE_HTML = """\
<!DOCTYPE html>
<html lang="es">
<head><meta charset="utf-8"><title>{% block title %}{% endblock %}</title></head>
<body style="font-family: Arial, sans-serif; color: #1f2937; max-width: 600px; margin: 0 auto;">
  <div style="background: #0b3d91; color: #fff; padding: 16px 24px;">
    <h2 style="margin: 0;">{{ company_name }}</h2>
  </div>
  <div style="padding: 24px;">
    {% block content %}{% endblock %}
  </div>
  <div style="padding: 12px 24px; font-size: 12px; color: #6b7280;">
    Este es un mensaje automático, por favor no responda a este correo.
  </div>
</body>
</html>
"""

_PAYMENT_HTML = """\
{% extends "base.html" %}
{% block title %}Confirmación de pago{% endblock %}
{% block content %}
<p>Estimado(a) {{ customer_name }},</p>
<p>Hemos recibido su pago. Estos son los detalles:</p>
<table style="border-collapse: collapse; width: 100%;">
  <tr><td><strong>Recibo</strong></td><td>{{ receipt_number }}</td></tr>
  <tr><td><strong>Método de pago</strong></td><td>{{ payment_method }}</td></tr>
  <tr><td><strong>Fecha</strong></td><td>{{ payment_date }}</td></tr>
  {% if transaction_id %}<tr><td><strong>Transacción</strong></td><td>{{ transaction_id }}</td></tr>{% endif %}
</table>
<h3>Facturas pagadas</h3>
<table style="border-collapse: collapse; width: 100%;">
  <tr><th align="left">Factura</th><th align="right">Monto</th></tr>
  {% for line in lines %}
  <tr><td>{{ line.invoice_number }}</td><td align="right">{{ currency }} {{ "%.2f"|format(line.amount) }}</td></tr>
  {% endfor %}
  <tr><td><strong>Total</strong></td><td align="right"><strong>{{ currency }} {{ "%.2f"|format(total) }}</strong></td></tr>
</table>
<p>Gracias por su pago.</p>
{% endblock %}
"""

_PAYMENT_TEXT = """\
Estimado(a) {{ customer_name }},

Hemos recibido su pago.

Recibo: {{ receipt_number }}
Método de pago: {{ payment_method }}
Fecha: {{ payment_date }}
{% if transaction_id %}Transacción: {{ transaction_id }}
{% endif %}
Facturas pagadas:
{% for line in lines %}  - {{ line.invoice_number }}: {{ currency }} {{ "%.2f"|format(line.amount) }}
{% endfor %}
Total: {{ currency }} {{ "%.2f"|format(total) }}

Gracias por su pago.
{{ company_name }}
"""

_VERIFICATION_HTML = """\
{% extends "base.html" %}
{% block title %}Código de verificación{% endblock %}
{% block content %}
<p>Su código para consultar {{ query_label }} es:</p>
<p style="font-size: 32px; letter-spacing: 8px; font-weight: bold;">{{ code }}</p>
<p>El código vence en {{ ttl_minutes }} minutos y solo puede usarse una vez.</p>
<p>Si usted no solicitó este código, ignore este mensaje.</p>
{% endblock %}
"""

_VERIFICATION_TEXT = """\
Su código para consultar {{ query_label }} es: {{ code }}

El código vence en {{ ttl_minutes }} minutos y solo puede usarse una vez.
Si usted no solicitó este código, ignore este mensaje.

{{ company_name }}
"""

_RECEIPT_HTML = """\
{% extends "base.html" %}
{% block title %}Confirmación de pago - Recibo {{ receipt_number }}{% endblock %}
{% block content %}
<h3>¡Gracias por su pago!</h3>
<p>Estimado(a) <strong>{{ customer_name }}</strong>,</p>
<p>Hemos aplicado a su cuenta <strong>{{ currency }} {{ "%.2f"|format(total) }}</strong>
recibido el <strong>{{ transaction_date }}</strong> mediante <strong>{{ payment_method }}</strong>.</p>
<h3>Detalle de cobro</h3>
<table style="border-collapse: collapse; width: 100%;">
  <tr><th align="left">Referencia</th><th align="left">Nro. CUFE</th><th align="center">Cuota</th><th align="right">Recibido</th></tr>
  {% for row in rows %}
  <tr>
    <td>{{ row.invoice_nr }}</td><td>{{ row.official_invoice_nr }}</td><td align="center">0</td>
    <td align="right">{{ currency }} {{ "%.2f"|format(row.amount) }}</td>
  </tr>
  {% endfor %}
</table>
<p>Si tiene alguna consulta sobre la facturación, responda a esta notificación.</p>
<p>Atentamente,<br><strong>Depto. Crédito y Cobros</strong></p>
{% endblock %}
"""

_RECEIPT_TEXT = """\
¡Gracias por su pago!

Estimado(a) {{ customer_name }},

Hemos aplicado a su cuenta {{ currency }} {{ "%.2f"|format(total) }} recibido el {{ transaction_date }} mediante {{ payment_method }}.

Recibo: {{ receipt_number }}
Detalle de cobro:
{% for row in rows %}  - {{ row.invoice_nr }}{% if row.official_invoice_nr %} (CUFE {{ row.official_invoice_nr }}){% endif %}: {{ currency }} {{ "%.2f"|format(row.amount) }}
{% endfor %}

Atentamente,
Depto. Crédito y Cobros
{{ company_name }}
"""

TEMPLATES = {
    "base.html": _BASE_HTML,
    "payment_confirmation.html": _PAYMENT_HTML,
    "payment_confirmation.txt": _PAYMENT_TEXT,
    "verification_code.html": _VERIFICATION_HTML,
    "verification_code.txt": _VERIFICATION_TEXT,
    "receipt_notification.html": _RECEIPT_HTML,
    "receipt_notification.txt": _RECEIPT_TEXT,
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render(name: str, **context: Any) -> tuple[str, str]:
    """Render the (html, text) pair for a template name without extension."""
    html = _env.get_template(f"{name}.html").render(**context)
    text = _env.get_template(f"{name}.txt").render(**context)
    return html, text.strip() + "\n"
