"""
Email templates and the renderer that turns them into HTML.

Templates are Jinja2 sources looked up by name:
1. <templates_dir>/<name>.html on disk (editable without a deploy)
2. The built-in set below (welcome, order-confirmation, order-shipped,
   admin-alert)
3. A generic passthrough that shows whatever data it was given

Design decisions:
- Compiled templates are cached per renderer instance, keyed by name, and
  only dropped through invalidate()
- render() never raises; a broken template or bad data yields a small
  diagnostic page with the data serialized as JSON, so a job can still
  deliver something useful
- Currency and date filters read a small locale table instead of pulling
  in a full i18n library
- Subjects are plain text and use str.format placeholders
"""

import html
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

from jinja2 import BaseLoader, Environment, Template, Undefined, UndefinedError

logger = logging.getLogger("templates")

TEMPLATE_SUFFIX = ".html"
_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


# =============================================================================
# Locale formatting
# =============================================================================

@dataclass(frozen=True)
class LocaleFormat:
    """Number and date conventions for one locale."""
    currency_symbols: dict[str, str]
    months: tuple[str, ...]
    date_pattern: str
    decimal_sep: str = "."
    group_sep: str = ","
    symbol_space: bool = False


LOCALES: dict[str, LocaleFormat] = {
    "en-US": LocaleFormat(
        currency_symbols={"USD": "$", "EUR": "€", "GBP": "£", "PEN": "S/"},
        months=(
            "January", "February", "March", "April", "May", "June", "July",
            "August", "September", "October", "November", "December",
        ),
        date_pattern="{month} {day}, {year}",
    ),
    "es-PE": LocaleFormat(
        currency_symbols={"PEN": "S/", "USD": "US$", "EUR": "€"},
        months=(
            "enero", "febrero", "marzo", "abril", "mayo", "junio", "julio",
            "agosto", "septiembre", "octubre", "noviembre", "diciembre",
        ),
        date_pattern="{day} de {month} de {year}",
        symbol_space=True,
    ),
}


def format_currency(value: Any, currency: str = "USD", locale: str = "en-US") -> str:
    """Format an amount as money, e.g. 1234.5 -> "$1,234.50" (en-US) or "S/ 1,234.50" (es-PE)."""
    if value is None or isinstance(value, Undefined):
        return ""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return str(value)

    fmt = LOCALES.get(locale, LOCALES["en-US"])
    number = f"{abs(amount):,.2f}"
    if (fmt.group_sep, fmt.decimal_sep) != (",", "."):
        number = number.replace(",", "\0").replace(".", fmt.decimal_sep).replace("\0", fmt.group_sep)
    symbol = fmt.currency_symbols.get(currency, currency)
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{' ' if fmt.symbol_space else ''}{number}"


def format_date(value: Any, locale: str = "en-US") -> str:
    """Format a date in the locale's long form, e.g. "March 5, 2024"."""
    if value is None or isinstance(value, Undefined):
        return ""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    if not isinstance(value, (date, datetime)):
        return str(value)

    fmt = LOCALES.get(locale, LOCALES["en-US"])
    return fmt.date_pattern.format(
        day=value.day,
        month=fmt.months[value.month - 1],
        year=value.year,
    )


def _eq(a: Any, b: Any) -> bool:
    return a == b


def _gt(a: Any, b: Any) -> bool:
    try:
        return a > b
    except (TypeError, UndefinedError):
        return False


def _lt(a: Any, b: Any) -> bool:
    try:
        return a < b
    except (TypeError, UndefinedError):
        return False


# =============================================================================
# Template Definitions
# =============================================================================

WELCOME_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Welcome</title></head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #2c3e50;">Welcome, {{ firstName }}!</h1>
  <p>Thanks for creating your account. Everything is ready for you to start shopping.</p>
  {% if loginUrl %}
  <p><a href="{{ loginUrl }}" style="background: #3498db; color: #fff; padding: 10px 20px; text-decoration: none; border-radius: 4px;">Sign in</a></p>
  {% endif %}
  <p>The team</p>
</body>
</html>
"""

ORDER_CONFIRMATION_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Order confirmation</title></head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #27ae60;">Thanks for your order{% if firstName %}, {{ firstName }}{% endif %}!</h1>
  <p>Order <strong>#{{ orderId }}</strong>{% if orderDate %} placed on {{ orderDate | date }}{% endif %}.</p>
  {% if items %}
  <table style="width: 100%; border-collapse: collapse;">
    <tr><th align="left">Item</th><th align="right">Qty</th><th align="right">Price</th></tr>
    {% for item in items %}
    <tr>
      <td>{{ item.name or item.productName or item.productId }}</td>
      <td align="right">{{ item.quantity }}</td>
      <td align="right">{{ item.price | currency }}</td>
    </tr>
    {% endfor %}
  </table>
  {% endif %}
  <p><strong>Total: {{ total | currency }}</strong></p>
  {% if trackingUrl %}<p><a href="{{ trackingUrl }}">View your order</a></p>{% endif %}
</body>
</html>
"""

ORDER_SHIPPED_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Your order has shipped</title></head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #2980b9;">Good news{% if firstName %}, {{ firstName }}{% endif %}!</h1>
  <p>Your order <strong>#{{ orderId }}</strong> is on its way.</p>
  <p>Tracking number: <strong>{{ trackingNumber }}</strong></p>
  {% if estimatedDelivery %}<p>Estimated delivery: {{ estimatedDelivery | date }}</p>{% endif %}
  {% if trackingUrl %}<p><a href="{{ trackingUrl }}">Track your package</a></p>{% endif %}
</body>
</html>
"""

ADMIN_ALERT_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Admin alert</title></head>
<body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: 0 auto;">
  <h1 style="color: {% if eq(alertType, 'low_stock') %}#e67e22{% else %}#c0392b{% endif %};">Alert: {{ alertType }}</h1>
  <p>{{ message }}</p>
  {% if data %}
  <table style="border-collapse: collapse;">
    {% for key, value in data.items() %}
    <tr><td style="padding-right: 12px;"><strong>{{ key }}</strong></td><td>{{ value }}</td></tr>
    {% endfor %}
  </table>
  {% if gt(data.threshold, data.currentStock) %}<p>Stock is below the configured threshold.</p>{% endif %}
  {% endif %}
  {% if timestamp %}<p><small>{{ timestamp | date }}</small></p>{% endif %}
  {% if dashboardUrl %}<p><a href="{{ dashboardUrl }}">Open the admin dashboard</a></p>{% endif %}
</body>
</html>
"""

GENERIC_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Notification</title></head>
<body style="font-family: Arial, sans-serif; color: #333;">
  <h1>Notification</h1>
  <p>Template: {{ template_name }}</p>
  <pre>{{ content }}</pre>
</body>
</html>
"""

BUILTIN_TEMPLATES: dict[str, str] = {
    "welcome": WELCOME_TEMPLATE,
    "order-confirmation": ORDER_CONFIRMATION_TEMPLATE,
    "order-shipped": ORDER_SHIPPED_TEMPLATE,
    "admin-alert": ADMIN_ALERT_TEMPLATE,
}


@dataclass(frozen=True)
class TemplateInfo:
    """Catalogue entry describing a known email template."""
    name: str
    subject: str
    description: str
    variables: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "subject": self.subject,
            "description": self.description,
            "variables": list(self.variables),
        }


TEMPLATE_CATALOG: dict[str, TemplateInfo] = {
    info.name: info
    for info in (
        TemplateInfo("welcome", "Welcome to our store, {firstName}!",
                     "Sent after a user registers", ("firstName", "loginUrl")),
        TemplateInfo("order-confirmation", "Order confirmation #{orderId}",
                     "Sent when an order is created",
                     ("firstName", "orderId", "items", "total", "orderDate", "trackingUrl")),
        TemplateInfo("order-shipped", "Your order #{orderId} has shipped",
                     "Sent when an order leaves the warehouse",
                     ("firstName", "orderId", "trackingNumber", "trackingUrl", "estimatedDelivery")),
        TemplateInfo("order-delivered", "Your order #{orderId} was delivered",
                     "Sent when an order is delivered", ("firstName", "orderId", "reviewUrl")),
        TemplateInfo("password-reset", "Reset your password",
                     "Password reset link", ("firstName", "resetUrl", "expiresInMinutes")),
        TemplateInfo("admin-alert", "[Admin alert] {alertType}",
                     "Operational alerts for administrators",
                     ("alertType", "message", "data", "timestamp", "dashboardUrl")),
    )
}


class _BlankMissing(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_subject(name: str, data: dict[str, Any], default: str = "Notification") -> str:
    """Plain-text subject line for a template, with missing values left blank."""
    info = TEMPLATE_CATALOG.get(name)
    if info is None:
        return default
    return info.subject.format_map(_BlankMissing(data)).strip()


# =============================================================================
# Renderer
# =============================================================================

@dataclass
class CompiledTemplate:
    """A compiled template plus where its source came from (file, builtin, generic)."""
    name: str
    template: Template
    origin: str


@dataclass
class TemplateRenderer:
    """
    Renders named email templates to HTML.

    Example:
        renderer = TemplateRenderer(templates_dir=Path("templates"))
        html = renderer.render("welcome", {"firstName": "Ann", "loginUrl": "..."})
    """
    templates_dir: Optional[Path] = None
    locale: str = "en-US"
    currency: str = "USD"
    _cache: dict[str, CompiledTemplate] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.env = Environment(
            loader=BaseLoader(),
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = self._filter_currency
        self.env.filters["date"] = self._filter_date
        self.env.globals.update(eq=_eq, gt=_gt, lt=_lt)

    def _filter_currency(self, value: Any, currency: Optional[str] = None) -> str:
        return format_currency(value, currency or self.currency, self.locale)

    def _filter_date(self, value: Any) -> str:
        return format_date(value, self.locale)

    # -------------------------------------------------------------------------
    # Loading and caching
    # -------------------------------------------------------------------------

    def _load_source(self, name: str) -> tuple[str, str]:
        if self.templates_dir is not None and _SAFE_NAME.match(name):
            path = self.templates_dir / f"{name}{TEMPLATE_SUFFIX}"
            try:
                return path.read_text(encoding="utf-8"), "file"
            except FileNotFoundError:
                pass
        if name in BUILTIN_TEMPLATES:
            return BUILTIN_TEMPLATES[name], "builtin"
        logger.warning(f"Template '{name}' not found, using generic template")
        return GENERIC_TEMPLATE, "generic"

    def get_template(self, name: str) -> CompiledTemplate:
        """Compile (on first use) and return the template for a name."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        source, origin = self._load_source(name)
        compiled = CompiledTemplate(name=name, template=self.env.from_string(source), origin=origin)
        self._cache[name] = compiled
        logger.debug(f"Compiled template '{name}' from {origin}")
        return compiled

    def is_cached(self, name: str) -> bool:
        return name in self._cache

    def invalidate(self, name: Optional[str] = None) -> int:
        """
        Drop cached templates.

        Args:
            name: Template to drop; all templates when omitted

        Returns:
            Number of entries removed
        """
        if name is None:
            count = len(self._cache)
            self._cache.clear()
        else:
            count = 1 if self._cache.pop(name, None) is not None else 0
        logger.info(f"Invalidated {count} cached template(s)")
        return count

    def preload(self) -> list[str]:
        """Compile every catalogued template. Returns the names that compiled."""
        loaded = []
        for name in TEMPLATE_CATALOG:
            try:
                self.get_template(name)
            except Exception as exc:
                logger.error(f"Failed to preload template '{name}': {exc}")
                continue
            loaded.append(name)
        logger.info(f"Preloaded {len(loaded)} templates")
        return loaded

    def available_templates(self) -> list[TemplateInfo]:
        return list(TEMPLATE_CATALOG.values())

    # -------------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------------

    def render(self, name: str, data: Optional[dict[str, Any]] = None) -> str:
        """
        Render a template to HTML. Never raises.

        Args:
            name: Template name
            data: Template variables

        Returns:
            The rendered HTML, or a diagnostic page when rendering failed
        """
        data = dict(data or {})
        try:
            compiled = self.get_template(name)
            context = data
            if compiled.origin == "generic":
                content = data.get("content") or json.dumps(data, default=str, indent=2)
                context = {**data, "template_name": name, "content": content}
            return compiled.template.render(context)
        except Exception as exc:
            logger.error(f"Failed to render template '{name}': {exc}")
            return self._diagnostic(name, data, exc)

    @staticmethod
    def _diagnostic(name: str, data: dict[str, Any], exc: Exception) -> str:
        try:
            payload = json.dumps(data, default=str, indent=2)
        except (TypeError, ValueError):
            payload = repr(data)
        return (
            "<!DOCTYPE html><html><body>"
            f"<h1>Notification</h1><p>Template {html.escape(name)} could not be rendered "
            f"({html.escape(type(exc).__name__)}).</p>"
            f"<pre>{html.escape(payload)}</pre>"
            "</body></html>"
        )
