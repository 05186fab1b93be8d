import logging
import re
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from order_engine.core.config import settings
from order_engine.core.errors import ExternalServiceError
from order_engine.db.models import Product, Variant, VariantStock

logger = logging.getLogger(__name__)


def _tokens(*parts: Optional[str]) -> set[str]:
    text = " ".join(p or "" for p in parts).lower()
    return set(re.sub(r"[^a-z0-9\s]", " ", text).split())


def _row(v: Variant) -> dict:
    return {
        "product_id": v.product_id,
        "variant_id": v.id,
        "title": v.product.title,
        "brand": v.product.brand,
        "price": v.price_cents,
        "image": v.product.image_url,
    }


def _remote(variant_ids: list[int], limit: int, client: Optional[httpx.Client]) -> list[dict]:
    url = f"{settings.RECOMMENDER_BASE.rstrip('/')}/v1/suggestions/similar"
    own = client is None
    client = client or httpx.Client(timeout=5.0)
    try:
        resp = client.post(url, json={"variant_ids": variant_ids, "limit": limit})
        resp.raise_for_status()
        return resp.json()[:limit]
    except (httpx.HTTPError, ValueError) as exc:
        logger.exception("similar-product lookup failed for %s", variant_ids)
        raise ExternalServiceError("recommender", str(exc)) from exc
    finally:
        if own:
            client.close()


def _local(db: Session, variant_ids: list[int], limit: int) -> list[dict]:
    targets = db.execute(
        select(Variant).options(joinedload(Variant.product)).where(Variant.id.in_(variant_ids))
    ).scalars().all()
    if not targets:
        return []

    target_products = {v.product_id for v in targets}
    wanted = set().union(*(_tokens(v.product.title, v.product.brand, v.product.model) for v in targets))
    brands = {v.product.brand.lower() for v in targets if v.product.brand}
    prices = [v.price_cents for v in targets]

    candidates = db.execute(
        select(Variant)
        .join(VariantStock, VariantStock.variant_id == Variant.id)
        .join(Product, Product.id == Variant.product_id)
        .options(joinedload(Variant.product))
        .where(
            Variant.active.is_(True),
            Product.active.is_(True),
            Variant.product_id.not_in(sorted(target_products)),
            VariantStock.qty_on_hand - VariantStock.qty_reserved > 0,
        )
        .order_by(Variant.id)
    ).scalars().all()

    best: dict[int, tuple[int, Variant]] = {}
    for v in candidates:
        p = v.product
        score = len(_tokens(p.title, p.brand, p.model) & wanted)
        if p.brand and p.brand.lower() in brands:
            score += 2
        if any(abs(v.price_cents - t) <= t * 0.2 for t in prices):
            score += 1
        if score <= 0:
            continue
        # one suggestion per product
        if v.product_id not in best or score > best[v.product_id][0]:
            best[v.product_id] = (score, v)

    ranked = sorted(best.values(), key=lambda sv: (-sv[0], sv[1].id))
    return [_row(v) for _, v in ranked[:limit]]


def suggest_similar(db: Session, variant_ids: list[int], limit: int = 6,
                    client: Optional[httpx.Client] = None) -> list[dict]:
    if not variant_ids or limit <= 0:
        return []
    if settings.RECOMMENDER_BASE:
        return _remote(variant_ids, limit, client)
    return _local(db, variant_ids, limit)
