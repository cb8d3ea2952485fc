from typing import Generator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from sendly.core.config import Settings
from sendly.core.errors import ValidationError
from sendly.core.security import TokenValidationError, decode_session_token, shop_domain_from_claims
from sendly.db.session import Database
from sendly.models.shop import Shop
from sendly.services.container import ServiceContainer
from sendly.services.shop_service import ensure_shop, normalize_shop_domain


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_db(database: Database = Depends(get_database)) -> Generator[Session, None, None]:
    db = database.session_factory()
    try:
        yield db
    finally:
        db.close()


def _resolve_shop_domain(request: Request, settings: Settings) -> str:
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer "):
        if not settings.shopify_api_secret:
            raise HTTPException(status_code=401, detail="Session tokens are not accepted")
        token = authorization[7:].strip()
        try:
            payload = decode_session_token(
                token,
                secret=settings.shopify_api_secret,
                audience=settings.shopify_api_key,
            )
            return shop_domain_from_claims(payload)
        except TokenValidationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc

    header_domain = request.headers.get("x-shopify-shop-domain")
    if header_domain and settings.allow_shop_domain_header:
        return header_domain

    raise HTTPException(status_code=401, detail="Shop authentication required")


def get_current_shop(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Shop:
    raw_domain = _resolve_shop_domain(request, settings)
    try:
        shop_domain = normalize_shop_domain(raw_domain)
    except ValidationError as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
    shop = ensure_shop(db, shop_domain, currency=settings.default_currency)
    request.state.shop_id = shop.id
    return shop
