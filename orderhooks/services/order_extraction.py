"""
Free-text order extraction - best-effort draft from SMS, WhatsApp or a call transcription.

Menu items are found by case-insensitive substring match; every match is
quantity 1 (no quantity parsing). The full text is kept verbatim as
special instructions. The result is a draft for staff to confirm.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderhooks.models.menu_item import MenuItem

logger = logging.getLogger(__name__)

DELIVERY_KEYWORDS = ("deliver", "livr", "liefer", "consegn")
PICKUP_KEYWORDS = ("pickup", "pick up", "abhol", "emporter", "ritir", "asporto")


@dataclass
class OrderDraft:
    items: list = field(default_factory=list)
    special_instructions: str = ""
    fulfillment_type: str = "dine-in"


def detect_fulfillment_type(text: str) -> str:
    lower = (text or "").lower()
    if any(k in lower for k in DELIVERY_KEYWORDS):
        return "delivery"
    if any(k in lower for k in PICKUP_KEYWORDS):
        return "pickup"
    return "dine-in"


def extract_order(text: str, menu_items: Iterable) -> OrderDraft:
    """Match menu item names against text."""
    lower = (text or "").lower()
    items = []
    for item in menu_items:
        name = (item.name or "").strip()
        if name and name.lower() in lower:
            items.append({
                "product_id": str(item.id),
                "name": item.name,
                "quantity": 1,
                "price": item.price,
            })
    return OrderDraft(
        items=items,
        special_instructions=text or "",
        fulfillment_type=detect_fulfillment_type(text),
    )


async def load_menu(db: AsyncSession, tenant_id: Optional[uuid.UUID]) -> list[MenuItem]:
    """Available menu items for a tenant."""
    if tenant_id is None:
        return []
    result = await db.execute(
        select(MenuItem).where(
            MenuItem.tenant_id == tenant_id,
            MenuItem.is_available.is_(True),
        )
    )
    return list(result.scalars().all())


async def extract_order_for_tenant(db: AsyncSession, tenant_id: Optional[uuid.UUID], text: str) -> OrderDraft:
    menu = await load_menu(db, tenant_id)
    draft = extract_order(text, menu)
    logger.info(
        "Extracted %d item(s) from %d chars, fulfillment=%s",
        len(draft.items), len(text or ""), draft.fulfillment_type,
        extra={"tenant_id": str(tenant_id) if tenant_id else None},
    )
    return draft
