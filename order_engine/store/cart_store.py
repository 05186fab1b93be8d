
import json
from typing import Dict, Any, Iterable
from redis import Redis
from order_engine.core.config import settings

def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)

def cart_key(customer_id: str) -> str:
    return f"cart:{customer_id}"

def get_cart(customer_id: str) -> Dict[str, Any]:
    r = get_client()
    items = r.hgetall(cart_key(customer_id))  # {variant_id_str: json}
    parsed = []
    for _, val in sorted(items.items()):
        try:
            parsed.append(json.loads(val))
        except ValueError:
            continue
    return {"items": parsed}

def put_item(customer_id: str, item: Dict[str, Any]):
    r = get_client()
    r.hset(cart_key(customer_id), str(item["variant_id"]), json.dumps(item))

def restore_items(customer_id: str, items: Iterable[Dict[str, Any]]):
    """Put order lines back in the cart, keeping the larger qty if already there."""
    r = get_client()
    key = cart_key(customer_id)
    with r.pipeline() as pipe:
        for item in items:
            field = str(item["variant_id"])
            existing = r.hget(key, field)
            if existing:
                try:
                    item = {**item, "qty": max(int(json.loads(existing).get("qty", 0)), int(item["qty"]))}
                except ValueError:
                    pass
            pipe.hset(key, field, json.dumps(item))
        pipe.execute()

def delete_items(customer_id: str, variant_ids: Iterable[int]):
    fields = [str(v) for v in variant_ids]
    if fields:
        get_client().hdel(cart_key(customer_id), *fields)

def clear_cart(customer_id: str):
    get_client().delete(cart_key(customer_id))
