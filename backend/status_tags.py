"""
Order status text → marketing status tag.

Matching is case-insensitive substring on the commerce status description.
Rules are checked in order; the first rule with a matching needle wins.
"""
from typing import Optional

AWAITING_PAYMENT = "pedido-aguardando-pagamento"
PROCESSING = "pedido-em-processamento"
DELIVERED = "pedido-entregue"
CANCELLED = "pedido-cancelado"

STATUS_TAG_RULES = (
    (("aguardando pagamento", "análise de pagamento", "analise de pagamento"), AWAITING_PAYMENT),
    (("aprovado", "nota fiscal emitida", "em transporte"), PROCESSING),
    (("entregue",), DELIVERED),
    (("cancelado",), CANCELLED),
)

STATUS_TAGS = frozenset(tag for _, tag in STATUS_TAG_RULES)


def tag_for_status(status_text: Optional[str]) -> Optional[str]:
    """Return the status tag for an order status, or None when no rule applies."""
    if not status_text:
        return None
    text = status_text.strip().lower()
    for needles, tag in STATUS_TAG_RULES:
        if any(n in text for n in needles):
            return tag
    return None


def exclusive_tag_entries(new_tag: str, current_tags=None) -> list[str]:
    """
    Tag list for a marketing payload: add `new_tag`, remove every other status tag.

    The marketing API removes a tag when it is sent with a leading "-". When the
    contact's current tags are unknown, every other status tag is removed.
    """
    if current_tags is None:
        others = STATUS_TAGS - {new_tag}
    else:
        current = {str(t).strip().lower() for t in current_tags}
        others = {t for t in STATUS_TAGS if t != new_tag and t in current}
    return [new_tag] + [f"-{t}" for t in sorted(others)]
