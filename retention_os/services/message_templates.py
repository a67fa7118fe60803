"""
Bounded library of retention message templates.

Templates are keyed by id; the id is what offer events and
message_performance record. Placeholders: {name}, {plan}, {percentage},
{duration}. Rendered messages never exceed MAX_MESSAGE_LENGTH.
"""

import re
from dataclasses import dataclass

from retention_os.models.domain.retention_domain import OfferType

MAX_MESSAGE_LENGTH = 200

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class MessageTemplate:
    template_id: str
    offer_type: OfferType
    text: str


TEMPLATES: tuple[MessageTemplate, ...] = (
    MessageTemplate(
        "pause_default",
        OfferType.PAUSE,
        "Need a break, {name}? Pause your subscription for up to {duration} and pick up right where you left off.",
    ),
    MessageTemplate(
        "pause_no_charge",
        OfferType.PAUSE,
        "Keep your account and your data. Pause for {duration} with no charge.",
    ),
    MessageTemplate(
        "downgrade_default",
        OfferType.DOWNGRADE,
        "Not using everything? Switch to the {plan} plan and keep the essentials for less.",
    ),
    MessageTemplate(
        "downgrade_save",
        OfferType.DOWNGRADE,
        "{name}, the {plan} plan covers what you use most. Downgrade instead of losing your setup.",
    ),
    MessageTemplate(
        "discount_default",
        OfferType.DISCOUNT,
        "Stay with us and get {percentage}% off for the next {duration}.",
    ),
    MessageTemplate(
        "discount_personal",
        OfferType.DISCOUNT,
        "{name}, we'd hate to see you go. Here is {percentage}% off for {duration}, applied automatically.",
    ),
    MessageTemplate(
        "support_default",
        OfferType.SUPPORT,
        "Something not working? Talk to our team before you go. Most issues are fixed in one conversation.",
    ),
    MessageTemplate(
        "feedback_default",
        OfferType.FEEDBACK,
        "Before you leave, tell us what we could do better. It takes less than a minute.",
    ),
)

TEMPLATES_BY_ID: dict[str, MessageTemplate] = {t.template_id: t for t in TEMPLATES}

# First template of each type is the canonical one
CANONICAL_TEMPLATES: dict[OfferType, MessageTemplate] = {}
for _template in TEMPLATES:
    CANONICAL_TEMPLATES.setdefault(_template.offer_type, _template)


def templates_for(offer_type: OfferType) -> list[MessageTemplate]:
    return [t for t in TEMPLATES if t.offer_type == offer_type]


def canonical_template(offer_type: OfferType) -> MessageTemplate:
    return CANONICAL_TEMPLATES[offer_type]


def render(template: MessageTemplate, values: dict[str, str]) -> str:
    """Substitute known placeholders; unknown ones are left as written."""

    def _replace(match: re.Match) -> str:
        value = values.get(match.group(1))
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template.text)[:MAX_MESSAGE_LENGTH]
