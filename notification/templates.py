#!/usr/bin/env python3
"""
Template Engine - localized subject/body rendering.

Templates live in YAML files and are keyed by (notification type, channel):

    template:
      id: transaction_confirmed_email
      type: TRANSACTION_CONFIRMED
      channel: email
      subject:
        en: "Transaction confirmed"
      body:
        en:
          text: "Your transaction {{ txHash }} has been confirmed."
          html: "<p>Your transaction <code>{{ txHash }}</code> has been confirmed.</p>"

Every template is compiled once with a shared set of helpers. A missing
locale falls back to "en"; a missing template falls back to a built-in
default table, then to a generic passthrough of the event data.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import jinja2
import yaml

from core.config_loader import TemplatesConfig
from notification.models import NotificationType

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en"

_VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

DEFAULT_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.TRANSACTION_CONFIRMED: {
        'subject': "Transaction Confirmed",
        'body': "Your transaction {{txHash}} has been confirmed.",
    },
    NotificationType.TRANSACTION_FAILED: {
        'subject': "Transaction Failed",
        'body': "Your transaction {{txHash}} has failed. Reason: {{reason}}",
    },
    NotificationType.LOGIN_ALERT: {
        'subject': "New Login Detected",
        'body': "A new login was detected from {{location}} at {{timestamp}}.",
    },
    NotificationType.SECURITY_ALERT: {
        'subject': "Security Alert",
        'body': "Suspicious activity detected on your account: {{activity}}",
    },
}

# Routing keys that are not message content
_PASSTHROUGH_SKIP_KEYS = {'channels', 'headers', 'templateId', 'attachments'}

CURRENCY_SYMBOLS = {'USD': '$', 'EUR': '€', 'GBP': '£', 'JPY': '¥', 'CNY': '¥', 'KRW': '₩'}


# ============ Helpers ============

def format_date(value: Any, fmt: str = "%Y-%m-%d %H:%M UTC") -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, (int, float)):
        # Epoch milliseconds are common in event payloads
        seconds = value / 1000 if value > 1e11 else value
        value = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return value
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime(fmt)
    return str(value)


def format_currency(value: Any, currency: str = "USD", decimals: int = 2) -> str:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return str(value)
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol:
        return f"{symbol}{amount:,.{decimals}f}"
    return f"{amount:,.{decimals}f} {currency}"


def truncate(value: Any, length: int = 100, suffix: str = "...") -> str:
    text = "" if value is None else str(value)
    if len(text) <= length:
        return text
    return text[:max(0, length - len(suffix))] + suffix


def pluralize(count: Any, singular: str, plural: Optional[str] = None) -> str:
    try:
        is_one = int(count) == 1
    except (TypeError, ValueError):
        is_one = False
    if is_one:
        return singular
    return plural if plural is not None else f"{singular}s"


HELPERS = {
    'format_date': format_date,
    'format_currency': format_currency,
    'truncate': truncate,
    'pluralize': pluralize,
    'eq': lambda a, b: a == b,
    'ne': lambda a, b: a != b,
    'lt': lambda a, b: a < b,
    'gt': lambda a, b: a > b,
    'lte': lambda a, b: a <= b,
    'gte': lambda a, b: a >= b,
}


def substitute_variables(template: str, data: Dict[str, Any]) -> str:
    """Replace ``{{name}}`` with ``data[name]``; unknown names stay as written."""
    def _replace(match: re.Match) -> str:
        name = match.group(1)
        return str(data[name]) if name in data else match.group(0)
    return _VARIABLE_PATTERN.sub(_replace, template)


def template_key(notification_type: Union[NotificationType, str], channel: str) -> str:
    type_name = notification_type.value if isinstance(notification_type, NotificationType) else notification_type
    return f"{type_name.lower()}:{channel}"


@dataclass
class RenderedTemplate:
    subject: Optional[str]
    body: str
    title: Optional[str] = None
    html: Optional[str] = None
    locale: str = DEFAULT_LOCALE
    template_id: Optional[str] = None


@dataclass
class CompiledTemplate:
    id: str
    type: str
    channel: str
    subjects: Dict[str, jinja2.Template] = field(default_factory=dict)
    titles: Dict[str, jinja2.Template] = field(default_factory=dict)
    texts: Dict[str, jinja2.Template] = field(default_factory=dict)
    htmls: Dict[str, jinja2.Template] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    @property
    def locales(self) -> List[str]:
        return sorted(set(self.subjects) | set(self.texts))

    def resolve_locale(self, locale: str) -> Optional[str]:
        if locale in self.texts:
            return locale
        if DEFAULT_LOCALE in self.texts:
            return DEFAULT_LOCALE
        return None

    def render(self, locale: str, context: Dict[str, Any]) -> RenderedTemplate:
        def _part(parts: Dict[str, jinja2.Template]) -> Optional[str]:
            compiled = parts.get(locale) or parts.get(DEFAULT_LOCALE)
            return compiled.render(context) if compiled else None

        subject = _part(self.subjects)
        return RenderedTemplate(
            subject=subject,
            title=_part(self.titles) or subject,
            body=_part(self.texts) or "",
            html=_part(self.htmls),
            locale=locale,
            template_id=self.id,
        )


class TemplateEngine:
    """Loads, compiles and renders notification templates."""

    def __init__(self, config: Optional[TemplatesConfig] = None, template_dir: Optional[str] = None):
        self.config = config or TemplatesConfig()
        self.template_dir = Path(template_dir or self.config.path)
        self._text_env = self._build_environment(autoescape=False)
        self._html_env = self._build_environment(autoescape=True)
        self._templates: Dict[str, CompiledTemplate] = {}
        self.load_templates()

    @staticmethod
    def _build_environment(autoescape: bool) -> jinja2.Environment:
        env = jinja2.Environment(autoescape=autoescape, keep_trailing_newline=False)
        env.filters.update(HELPERS)
        env.globals.update(HELPERS)
        return env

    def load_templates(self) -> int:
        """Compile every template file under the template directory. Returns the count loaded."""
        if not self.template_dir.is_dir():
            logger.warning(f"Template directory not found: {self.template_dir}")
            return 0

        loaded = 0
        for path in sorted(self.template_dir.glob("*.y*ml")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    document = yaml.safe_load(f) or {}
                entries = document.get('templates') or [document.get('template')]
                for entry in entries:
                    if not entry:
                        continue
                    compiled = self._compile(entry, source=str(path))
                    self._templates[template_key(compiled.type, compiled.channel)] = compiled
                    loaded += 1
            except (yaml.YAMLError, jinja2.TemplateError, KeyError, TypeError, AttributeError) as e:
                logger.error(f"Failed to load template {path.name}: {e}")

        logger.info(f"Loaded {loaded} notification templates from {self.template_dir}")
        return loaded

    def _compile(self, entry: Dict[str, Any], source: Optional[str] = None) -> CompiledTemplate:
        notification_type = entry.get('type') or entry['id']
        compiled = CompiledTemplate(
            id=entry.get('id') or template_key(notification_type, entry['channel']),
            type=notification_type,
            channel=entry['channel'],
            metadata=entry.get('metadata') or {},
            source=source,
        )
        for locale, text in (entry.get('subject') or {}).items():
            compiled.subjects[locale] = self._text_env.from_string(text)
        for locale, text in (entry.get('title') or {}).items():
            compiled.titles[locale] = self._text_env.from_string(text)
        for locale, body in (entry.get('body') or {}).items():
            if isinstance(body, str):
                body = {'text': body}
            if body.get('text') is not None:
                compiled.texts[locale] = self._text_env.from_string(body['text'])
            if body.get('html') is not None:
                compiled.htmls[locale] = self._html_env.from_string(body['html'])
        return compiled

    def reload_templates(self) -> int:
        """Recompile templates from disk without restarting the process."""
        previous = self._templates
        self._templates = {}
        try:
            return self.load_templates()
        except OSError as e:
            logger.error(f"Template reload failed, keeping previous templates: {e}")
            self._templates = previous
            return len(previous)

    def get_template(self, notification_type: NotificationType, channel: str) -> Optional[CompiledTemplate]:
        return self._templates.get(template_key(notification_type, channel))

    def get_all_templates(self) -> List[Dict[str, Any]]:
        return [
            {
                'key': key,
                'id': compiled.id,
                'type': compiled.type,
                'channel': compiled.channel,
                'locales': compiled.locales,
                'metadata': compiled.metadata,
            }
            for key, compiled in sorted(self._templates.items())
        ]

    def _build_context(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        context = {
            'app_name': self.config.app_name,
            'app_url': self.config.app_url,
            'appName': self.config.app_name,
            'appUrl': self.config.app_url,
            'current_year': now.year,
            'timestamp': now.isoformat(),
        }
        context.update(data)
        return context

    def render(
        self,
        notification_type: NotificationType,
        channel: str,
        data: Dict[str, Any],
        locale: str = DEFAULT_LOCALE
    ) -> RenderedTemplate:
        """Render the (type, channel) template for ``locale``, falling back as described above."""
        compiled = self._templates.get(template_key(notification_type, channel))
        if compiled:
            resolved = compiled.resolve_locale(locale)
            if resolved:
                try:
                    return compiled.render(resolved, self._build_context(data))
                except jinja2.TemplateError as e:
                    logger.error(f"Template {compiled.id} failed to render: {e}")
            else:
                logger.warning(f"Template {compiled.id} has no '{locale}' or '{DEFAULT_LOCALE}' body")

        return self.render_default(notification_type, data)

    def render_default(self, notification_type: NotificationType, data: Dict[str, Any]) -> RenderedTemplate:
        default = DEFAULT_TEMPLATES.get(notification_type)
        if default:
            context = self._build_context(data)
            subject = substitute_variables(default['subject'], context)
            return RenderedTemplate(
                subject=subject,
                title=subject,
                body=substitute_variables(default['body'], context),
            )

        subject = f"Notification from {self.config.app_name}"
        if data.get('message') is not None:
            body = str(data['message'])
        else:
            body = "\n".join(
                f"{key}: {value}" for key, value in data.items() if key not in _PASSTHROUGH_SKIP_KEYS
            )
        return RenderedTemplate(subject=subject, title=subject, body=body)
