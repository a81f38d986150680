import asyncio
import json
import logging
import os
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from .models import Bundle, BundleItem, CartItem, Order, OrderItem, Product, ReviewStats, StoreInfo, Voucher


logger = logging.getLogger(__name__)

# Category slugs that count as PC components when deriving a user's parts
PC_COMPONENT_SLUGS = {
    "processor", "cpu", "motherboard", "gpu", "graphics-card", "video-card",
    "ram", "memory", "ssd", "hdd", "storage", "psu", "power-supply",
    "case", "cooling", "cooler",
}

ORDER_STATUSES_EXCLUDED_FROM_SALES = {"cancelled", "refunded"}


def slugify(text: Optional[str]) -> str:
    return "-".join((text or "").strip().lower().split())


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _to_order(row: Dict[str, Any]) -> Order:
    items = row.get("items") if row.get("items") is not None else row.get("order_items")
    data = dict(row)
    data["order_number"] = str(row.get("order_number"))
    data["items"] = [OrderItem(**it) for it in (items or [])]
    data.pop("order_items", None)
    return Order(**data)


def _linked_product(row: Dict[str, Any], by_id: Dict[str, Product]) -> Optional[Product]:
    """Product of a bundle or cart line: the joined record when present, else looked up by id."""
    nested = row.get("products")
    if isinstance(nested, dict):
        return Product.from_record(nested)
    return by_id.get(str(row.get("product_id")))


class CatalogStore:
    """Read side of the storefront data plus the one order mutation the
    assistant performs (cancellation).

    Subclasses supply raw rows; the derivations (owned components, trending,
    voucher validity, review aggregation) live here.
    """

    # --- raw row access, provided by subclasses -------------------------

    async def _product_rows(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _order_rows(self, user_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _sales_rows(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _review_rows(self, product_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _voucher_rows(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _recently_viewed_ids(self, user_id: str) -> List[str]:
        raise NotImplementedError

    async def _consent_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _update_order(self, order_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _settings_row(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def _bundle_rows(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def _cart_rows(self, user_id: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # --- public operations ----------------------------------------------

    async def fetch_products(self) -> List[Product]:
        rows = await self._product_rows()
        return [Product.from_record(r) for r in rows if (r.get("status") or "active") == "active"]

    async def fetch_products_by_ids(self, product_ids: List[str]) -> List[Product]:
        """Active products for the given ids, in the order asked for."""
        by_id = {p.id: p for p in await self.fetch_products()}
        return [by_id[str(pid)] for pid in dict.fromkeys(product_ids) if str(pid) in by_id]

    async def fetch_user_orders(self, user_id: str, limit: int = 10) -> List[Order]:
        rows = await self._order_rows(user_id)
        orders = [_to_order(r) for r in rows]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return orders[:limit]

    async def fetch_user_components(self, user_id: str) -> List[Product]:
        """Products the user already bought whose category is a PC component."""
        orders = await self.fetch_user_orders(user_id, limit=50)
        bought = {it.product_id for o in orders if o.status not in ORDER_STATUSES_EXCLUDED_FROM_SALES
                  for it in o.items if it.product_id}
        if not bought:
            return []
        products = await self.fetch_products()
        out: List[Product] = []
        for p in products:
            if p.id not in bought:
                continue
            if slugify(p.component_type) in PC_COMPONENT_SLUGS or slugify(p.category) in PC_COMPONENT_SLUGS:
                out.append(p)
        return out

    async def fetch_recently_viewed(self, user_id: str, limit: int = 5) -> List[Product]:
        ids = await self._recently_viewed_ids(user_id)
        by_id = {p.id: p for p in await self.fetch_products()}
        return [by_id[i] for i in ids if i in by_id][:limit]

    async def fetch_popular_products(self, limit: int = 5) -> List[Product]:
        sold: Dict[str, int] = defaultdict(int)
        for row in await self._sales_rows():
            if row.get("product_id"):
                sold[str(row["product_id"])] += int(row.get("quantity") or 0)
        by_id = {p.id: p for p in await self.fetch_products()}
        ranked = sorted((pid for pid in sold if pid in by_id), key=lambda pid: sold[pid], reverse=True)
        return [by_id[pid] for pid in ranked[:limit]]

    async def fetch_active_promotions(self) -> List[Voucher]:
        now = datetime.now(timezone.utc)
        out: List[Voucher] = []
        for row in await self._voucher_rows():
            v = Voucher(**row)
            until = _parse_ts(v.valid_until)
            if v.is_active and until is not None and until >= now:
                out.append(v)
        out.sort(key=lambda v: v.discount_value, reverse=True)
        return out

    async def fetch_active_bundles(self) -> List[Bundle]:
        by_id = {p.id: p for p in await self.fetch_products()}
        out: List[Bundle] = []
        for row in await self._bundle_rows():
            if not row.get("is_active", True):
                continue
            items = []
            for line in row.get("bundle_products") or []:
                product = _linked_product(line, by_id)
                if product is not None:
                    items.append(BundleItem(product=product, quantity=int(line.get("quantity") or 1)))
            if items:
                out.append(Bundle(
                    id=str(row["id"]),
                    name=row.get("name") or "",
                    description=row.get("description") or "",
                    discount_percentage=float(row.get("discount_percentage") or 0),
                    items=items,
                ))
        return out

    async def fetch_user_cart(self, user_id: str) -> List[CartItem]:
        by_id = {p.id: p for p in await self.fetch_products()}
        out: List[CartItem] = []
        for line in await self._cart_rows(user_id):
            product = _linked_product(line, by_id)
            if product is not None:
                out.append(CartItem(product=product, quantity=int(line.get("quantity") or 1)))
        return out

    async def fetch_review_stats(self, product_id: str) -> ReviewStats:
        ratings = [float(r["rating"]) for r in await self._review_rows(product_id) if r.get("rating") is not None]
        if not ratings:
            return ReviewStats()
        return ReviewStats(avg_rating=round(sum(ratings) / len(ratings), 1), review_count=len(ratings))

    async def get_ai_consent(self, user_id: str) -> Optional[bool]:
        """True/False when the user answered the AI-use consent prompt, None otherwise."""
        row = await self._consent_row(user_id)
        if not row or row.get("ai_assistant") is None:
            return None
        return bool(row["ai_assistant"])

    async def get_order(self, order_number: str, user_id: str) -> Optional[Order]:
        for row in await self._order_rows(user_id):
            if str(row.get("order_number")) == str(order_number):
                return _to_order(row)
        return None

    async def cancel_order(self, order: Order, reason: str) -> Order:
        fields = {
            "status": "cancelled",
            "cancellation_reason": reason,
            "cancelled_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._update_order(order.id, fields)
        return order.model_copy(update=fields)

    async def load_store_settings(self) -> StoreInfo:
        row = await self._settings_row()
        if not row:
            return StoreInfo()
        return StoreInfo(**{k: v for k, v in row.items() if k in StoreInfo.model_fields})


class JsonCatalogStore(CatalogStore):
    """Store backed by JSON documents (the demo ``data/`` directory).

    Mutations are applied to the in-memory copy only.
    """

    FILES = {
        "products": "products.json",
        "orders": "orders.json",
        "reviews": "reviews.json",
        "vouchers": "vouchers.json",
        "consents": "consents.json",
        "recently_viewed": "recently_viewed.json",
        "settings": "store_settings.json",
        "bundles": "bundles.json",
        "carts": "carts.json",
    }

    def __init__(
        self,
        products: Optional[List[Dict[str, Any]]] = None,
        orders: Optional[List[Dict[str, Any]]] = None,
        reviews: Optional[List[Dict[str, Any]]] = None,
        vouchers: Optional[List[Dict[str, Any]]] = None,
        consents: Optional[Dict[str, Dict[str, Any]]] = None,
        recently_viewed: Optional[Dict[str, List[str]]] = None,
        settings: Optional[Dict[str, Any]] = None,
        bundles: Optional[List[Dict[str, Any]]] = None,
        carts: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ):
        self.products = products or []
        self.orders = orders or []
        self.reviews = reviews or []
        self.vouchers = vouchers or []
        self.consents = consents or {}
        self.recently_viewed = recently_viewed or {}
        self.settings = settings
        self.bundles = bundles or []
        self.carts = carts or {}

    @classmethod
    def from_directory(cls, path: str) -> "JsonCatalogStore":
        loaded: Dict[str, Any] = {}
        for key, fname in cls.FILES.items():
            fpath = os.path.join(path, fname)
            if not os.path.exists(fpath):
                continue
            try:
                with open(fpath, "r", encoding="utf-8") as f:
                    loaded[key] = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("[catalog] failed to load %s: %s", fpath, e)
        return cls(**loaded)

    async def _product_rows(self):
        return list(self.products)

    async def _order_rows(self, user_id):
        return [o for o in self.orders if o.get("user_id") == user_id]

    async def _sales_rows(self):
        rows: List[Dict[str, Any]] = []
        for o in self.orders:
            if o.get("status") in ORDER_STATUSES_EXCLUDED_FROM_SALES:
                continue
            rows.extend(o.get("items") or [])
        return rows

    async def _review_rows(self, product_id):
        return [r for r in self.reviews if str(r.get("product_id")) == str(product_id)]

    async def _voucher_rows(self):
        return list(self.vouchers)

    async def _recently_viewed_ids(self, user_id):
        return [str(i) for i in self.recently_viewed.get(user_id, [])]

    async def _consent_row(self, user_id):
        return self.consents.get(user_id)

    async def _update_order(self, order_id, fields):
        for o in self.orders:
            if str(o.get("id")) == str(order_id):
                o.update(fields)
                return
        raise LookupError(f"order {order_id} not found")

    async def _settings_row(self):
        return self.settings

    async def _bundle_rows(self):
        return list(self.bundles)

    async def _cart_rows(self, user_id):
        return list(self.carts.get(user_id, []))


class SupabaseCatalogStore(CatalogStore):
    """Store backed by the hosted PostgREST API.

    ``requests`` is blocking, so every call runs in a worker thread.
    """

    def __init__(self, url: str, key: str, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.base = url.rstrip("/") + "/rest/v1"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"apikey": key, "Authorization": f"Bearer {key}"})

    def _get(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        resp = self.session.get(f"{self.base}/{table}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json() or []

    def _patch(self, table: str, params: Dict[str, str], body: Dict[str, Any]) -> None:
        resp = self.session.patch(f"{self.base}/{table}", params=params, json=body, timeout=self.timeout)
        resp.raise_for_status()

    async def _product_rows(self):
        return await asyncio.to_thread(self._get, "products", {
            "select": "*,brands(id,name),categories(id,name)",
            "status": "eq.active",
            "order": "created_at.desc",
        })

    async def _order_rows(self, user_id):
        return await asyncio.to_thread(self._get, "orders", {
            "select": "*,order_items(product_id,product_name,quantity,unit_price,total)",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
        })

    async def _sales_rows(self):
        return await asyncio.to_thread(self._get, "order_items", {"select": "product_id,quantity"})

    async def _review_rows(self, product_id):
        return await asyncio.to_thread(self._get, "product_reviews", {
            "select": "rating",
            "product_id": f"eq.{product_id}",
        })

    async def _voucher_rows(self):
        return await asyncio.to_thread(self._get, "vouchers", {
            "select": "*",
            "is_active": "eq.true",
            "order": "discount_value.desc",
        })

    async def _recently_viewed_ids(self, user_id):
        rows = await asyncio.to_thread(self._get, "recently_viewed", {
            "select": "product_id",
            "user_id": f"eq.{user_id}",
            "order": "viewed_at.desc",
            "limit": "10",
        })
        return [str(r["product_id"]) for r in rows if r.get("product_id")]

    async def _consent_row(self, user_id):
        rows = await asyncio.to_thread(self._get, "user_consents", {
            "select": "ai_assistant",
            "user_id": f"eq.{user_id}",
            "limit": "1",
        })
        return rows[0] if rows else None

    async def _update_order(self, order_id, fields):
        await asyncio.to_thread(self._patch, "orders", {"id": f"eq.{order_id}"}, fields)

    async def _settings_row(self):
        rows = await asyncio.to_thread(self._get, "website_settings", {"select": "*", "limit": "1"})
        return rows[0] if rows else None

    async def _bundle_rows(self):
        return await asyncio.to_thread(self._get, "bundles", {
            "select": "*,bundle_products(quantity,products(*,brands(name),categories(name)))",
            "is_active": "eq.true",
        })

    async def _cart_rows(self, user_id):
        carts = await asyncio.to_thread(self._get, "carts", {
            "select": "id",
            "user_id": f"eq.{user_id}",
            "limit": "1",
        })
        if not carts:
            return []
        return await asyncio.to_thread(self._get, "cart_items", {
            "select": "quantity,product_id,products(*,brands(name),categories(name))",
            "cart_id": f"eq.{carts[0]['id']}",
        })


def build_store(settings) -> CatalogStore:
    if settings.supabase_url and settings.supabase_key:
        return SupabaseCatalogStore(settings.supabase_url, settings.supabase_key)
    return JsonCatalogStore.from_directory(settings.data_dir)
