import logging
import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sendly.core.errors import ValidationError
from sendly.core.observability import log_event
from sendly.models.shop import Shop

logger = logging.getLogger("sendly.shops")

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9\-]*\.myshopify\.com$")


def normalize_shop_domain(value: str | None) -> str:
    domain = (value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    domain = domain.split("/", 1)[0]
    if not _SHOP_DOMAIN_RE.match(domain):
        raise ValidationError("Invalid shop domain", details={"shop_domain": value})
    return domain


def get_shop_by_domain(db: Session, shop_domain: str) -> Shop | None:
    return db.execute(select(Shop).where(Shop.shop_domain == shop_domain)).scalar_one_or_none()


def ensure_shop(db: Session, shop_domain: str, *, currency: str) -> Shop:
    """Return the tenant for `shop_domain`, creating it on first sight."""
    shop = get_shop_by_domain(db, shop_domain)
    if shop:
        return shop

    shop = Shop(shop_domain=shop_domain, shop_name=shop_domain.split(".", 1)[0], credits=0, currency=currency)
    db.add(shop)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another request.
        db.rollback()
        existing = get_shop_by_domain(db, shop_domain)
        if existing is None:
            raise
        return existing
    db.refresh(shop)
    log_event(logger, "shop.created", shop_id=shop.id, shop_domain=shop_domain)
    return shop
