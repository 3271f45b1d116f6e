"""
Welcome notification for a freshly issued pass.

Template resolution stops at the first hit:

  1. newest template attached to the pass's configuration
  2. newest template flagged as system default
  3. the built-in generic template below (never fails to resolve)

Placeholders use the ``{name}`` syntax of stored templates. Unknown
placeholders are left untouched. ``notify`` never raises: every failure
(template store, rendering, transport, timeout) ends up in the result.
"""
from __future__ import annotations
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from jinja2 import Environment, DictLoader, select_autoescape

from .errors import MailDeliveryError
from .helpers import format_date
from .infra.timings import timeit
from .mail import MailTransport
from .model.configstore import ConfigurationStore
from .model.db import Pass, DIRECT
from .model.pricing import PassConfiguration

logger = logging.getLogger(__name__)

SOURCE_CONFIGURATION = "configuration"
SOURCE_DEFAULT = "default"
SOURCE_GENERIC = "generic"

GENERIC_SUBJECT = "Your pass is ready, {customerName}!"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

_env = Environment(
    loader=DictLoader({
        "welcome.html": """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Your pass is ready</title></head>
<body style="font-family: Arial, sans-serif; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h1>Your pass is ready!</h1>
    <p>Hello {{ customer_name }}!</p>
    <p>Your local pass has been created successfully.</p>
    <ul>
      <li><strong>Code:</strong> {{ code }}</li>
      <li><strong>Guests:</strong> {{ guests }}</li>
      <li><strong>Valid for:</strong> {{ days }} day{{ "s" if days != 1 }}</li>
      <li><strong>Valid until:</strong> {{ expiration_date }}</li>
    </ul>
    {% if portal_url %}
    <p>Access your pass anytime:
      <a href="{{ portal_url }}">View my pass</a></p>
    {% endif %}
    {% if direct %}
    <p>Simply show this code at the access point.</p>
    {% endif %}
    <p>We hope you enjoy your local experience!</p>
  </div>
</body>
</html>
""",
    }),
    autoescape=select_autoescape(["html"]),
)


@dataclass(frozen=True)
class Customer:
    name: str
    email: str


@dataclass(frozen=True)
class ResolvedTemplate:
    source: str
    subject: str
    html: str


@dataclass(frozen=True)
class NotificationResult:
    attempted: bool
    sent: bool
    template_source: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


def substitute(text: str, values: Dict[str, str]) -> str:
    return _PLACEHOLDER.sub(
        lambda m: values.get(m.group(1), m.group(0)), text
    )


def placeholder_values(
        pass_: Pass, customer: Customer, magic_link: Optional[str]
) -> Dict[str, str]:
    return {
        "customerName": customer.name,
        "qrCode": pass_.code,
        "guests": str(pass_.guests),
        "days": str(pass_.days),
        "expirationDate": format_date(pass_.expires_at),
        "customerPortalUrl": magic_link or "",
        "magicLink": magic_link or "",
    }


def generic_template(
        pass_: Pass, customer: Customer, magic_link: Optional[str],
        delivery_method: str = DIRECT,
) -> ResolvedTemplate:
    html = _env.get_template("welcome.html").render(
        customer_name=customer.name,
        code=pass_.code,
        guests=pass_.guests,
        days=pass_.days,
        expiration_date=format_date(pass_.expires_at),
        portal_url=magic_link,
        direct=delivery_method == DIRECT,
    )
    return ResolvedTemplate(SOURCE_GENERIC, GENERIC_SUBJECT, html)


async def resolve_template(
    templates: Optional[ConfigurationStore],
    configuration: PassConfiguration,
    pass_: Pass,
    customer: Customer,
    magic_link: Optional[str],
) -> ResolvedTemplate:
    if templates is not None:
        try:
            row = await templates.find_template(configuration.id)
            if row is not None:
                return ResolvedTemplate(
                    SOURCE_CONFIGURATION,
                    row.subject or GENERIC_SUBJECT,
                    row.html,
                )
            row = await templates.default_template()
            if row is not None:
                return ResolvedTemplate(
                    SOURCE_DEFAULT, row.subject or GENERIC_SUBJECT, row.html
                )
        except Exception:
            logger.exception(
                "template lookup failed for configuration %s; "
                "using generic template", configuration.id,
            )
    return generic_template(
        pass_, customer, magic_link, configuration.delivery_method
    )


class NotificationDispatcher:
    def __init__(
        self,
        transport: Optional[MailTransport],
        timeout: float = 15.0,
    ) -> None:
        self.transport = transport
        self.timeout = timeout

    async def notify(
        self,
        pass_: Pass,
        customer: Customer,
        configuration: PassConfiguration,
        *,
        templates: Optional[ConfigurationStore] = None,
        magic_link: Optional[str] = None,
    ) -> NotificationResult:
        if self.transport is None:
            logger.warning(
                "no mail transport configured, welcome email for %s skipped",
                pass_.code,
            )
            return NotificationResult(attempted=False, sent=False)

        try:
            tpl = await resolve_template(
                templates, configuration, pass_, customer, magic_link
            )
            values = placeholder_values(pass_, customer, magic_link)
            subject = substitute(tpl.subject, values)
            html = substitute(tpl.html, values)
        except Exception as e:
            logger.exception("rendering welcome email for %s failed",
                             pass_.code)
            return NotificationResult(attempted=False, sent=False,
                                      error=str(e))

        try:
            async with timeit("mail.send"):
                message_id = await asyncio.wait_for(
                    self.transport.send(customer.email, subject, html),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError:
            logger.error("welcome email to %s timed out after %.1fs",
                         customer.email, self.timeout)
            return NotificationResult(True, False, tpl.source,
                                      error="timeout")
        except MailDeliveryError as e:
            logger.error("welcome email to %s failed: %s", customer.email, e)
            return NotificationResult(True, False, tpl.source, error=str(e))
        except Exception as e:
            logger.exception("welcome email to %s failed", customer.email)
            return NotificationResult(True, False, tpl.source, error=str(e))

        logger.info("welcome email sent to %s for %s (%s template)",
                    customer.email, pass_.code, tpl.source)
        return NotificationResult(True, True, tpl.source, message_id)
