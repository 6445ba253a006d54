from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import uuid

import httpx
import structlog
from jinja2 import DictLoader, Environment, select_autoescape

log = structlog.get_logger(__name__)

RESEND_URL = "https://api.resend.com/emails"

# ----------------------------
# Templates
# ----------------------------
TEMPLATES = {
    "order_confirmation.subject": "Your order is confirmed",
    "order_confirmation.html": """
<h1>Thanks for your order</h1>
<p>Payment reference: <code>{{ authorization_id }}</code></p>
<table>
  {% for line in lines %}
  <tr><td>{{ line.name }}</td><td>{{ line.amount }}</td></tr>
  {% endfor %}
  {% if discount %}
  <tr><td>Discount{% if coupon_code %} ({{ coupon_code }}){% endif %}</td>
      <td>-{{ discount }}</td></tr>
  {% endif %}
  <tr><th>Total</th><th>{{ total }}</th></tr>
</table>
{% if account_created %}
<p>We created an account for {{ email }}. Set a password from the sign-in
page to watch your replays.</p>
{% endif %}
""",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    autoescape=select_autoescape(default=True),
)


def render(template: str, variables: Dict[str, Any]) -> tuple[str, str]:
    subject = _env.get_template(f"{template}.subject").render(**variables)
    html = _env.get_template(f"{template}.html").render(**variables)
    return subject.strip(), html


# ----------------------------
# Senders
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def send(
        self, template: str, recipient: str, variables: Dict[str, Any]
    ) -> str: ...


class LogMailer(Mailer):
    """Renders and logs instead of sending. Keeps what it sent."""

    def __init__(self) -> None:
        self.sent: list[Dict[str, Any]] = []

    async def send(
        self, template: str, recipient: str, variables: Dict[str, Any]
    ) -> str:
        subject, html = render(template, variables)
        message_id = f"log_{uuid.uuid4().hex[:12]}"
        self.sent.append({
            "id": message_id, "template": template, "to": recipient,
            "subject": subject, "html": html,
        })
        log.info("mail.logged", template=template, to=recipient,
                 subject=subject, message_id=message_id)
        return message_id


class ResendMailer(Mailer):
    def __init__(self, api_key: str, sender: str,
                 http: Optional[httpx.AsyncClient] = None) -> None:
        self.api_key = api_key
        self.sender = sender
        self.http = http

    async def send(
        self, template: str, recipient: str, variables: Dict[str, Any]
    ) -> str:
        subject, html = render(template, variables)
        body = {
            "from": self.sender,
            "to": [recipient],
            "subject": subject,
            "html": html,
        }
        headers = {"authorization": f"Bearer {self.api_key}"}
        if self.http is not None:
            r = await self.http.post(RESEND_URL, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                r = await client.post(RESEND_URL, json=body, headers=headers)
        r.raise_for_status()
        return r.json().get("id", "")
