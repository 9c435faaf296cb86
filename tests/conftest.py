import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

import app as app_module
import store
from store import StoreError, STATUS_NOT_EXPORTED, STATUS_EXPORTED


ORDERS = [
    {"id": 1, "order_no": "A-001", "order_date": "2024-06-03", "customer_code": "C100",
     "customer_name": "山田商店", "status": STATUS_NOT_EXPORTED},
    {"id": 2, "order_no": "A-002", "order_date": "2024-06-15", "customer_code": "C200",
     "customer_name": "佐藤商事", "status": STATUS_NOT_EXPORTED},
    {"id": 3, "order_no": "A-003", "order_date": "2024-06-20", "customer_code": "C100",
     "customer_name": "山田商店", "status": STATUS_EXPORTED},
    {"id": 4, "order_no": "A-004", "order_date": "2024-07-02", "customer_code": "C300",
     "customer_name": "鈴木物産", "status": STATUS_NOT_EXPORTED},
]

ITEMS = [
    {"id": 11, "order_id": 1, "product_code": "P-10", "product_name": "りんご", "quantity": 2, "unit_price": 100, "amount": 200},
    {"id": 12, "order_id": 1, "product_code": "9999", "product_name": "値引き", "quantity": 1, "unit_price": -50, "amount": -50},
    {"id": 13, "order_id": 1, "product_code": "P-20", "product_name": "みかん", "quantity": 5, "unit_price": 40, "amount": 200},
    {"id": 21, "order_id": 2, "product_code": "P-30", "product_name": "ぶどう", "quantity": 1, "unit_price": 800, "amount": 800},
    {"id": 31, "order_id": 3, "product_code": "P-10", "product_name": "りんご", "quantity": 3, "unit_price": 100, "amount": 300},
    {"id": 41, "order_id": 4, "product_code": "P-40", "product_name": "なし", "quantity": 4, "unit_price": 150, "amount": 600},
]

DELIVERIES = [
    {"id": 7, "customer_code": "C100", "delivered_on": "2024-05-02"},
    {"id": 3, "customer_code": "C100", "delivered_on": "2024-04-11"},
    {"id": 5, "customer_code": "C200", "delivered_on": "2024-04-20"},
]


class FakeRestStore:
    """In-memory stand-in for the store's REST interface (store.rest_call)."""

    def __init__(self):
        self.orders = {o["id"]: dict(o) for o in copy.deepcopy(ORDERS)}
        self.items = copy.deepcopy(ITEMS)
        self.deliveries = copy.deepcopy(DELIVERIES)
        self.calls: List[Tuple[str, str, list]] = []
        self.fail_on: Optional[str] = None

    def __call__(self, method: str, table: str, params=None, body=None, headers=None) -> Any:
        params = list(params or [])
        self.calls.append((method, table, params))
        if self.fail_on == f"{method} {table}":
            raise StoreError(f"{method} {table} failed: connection refused")
        if method == "GET" and table == store.ORDER_ITEMS_TABLE:
            return self._order_items(params, headers or {})
        if method == "PATCH" and table == store.ORDERS_TABLE:
            return self._patch_orders(params, body or {})
        if method == "GET" and table == store.DELIVERY_HISTORY_TABLE:
            return self._deliveries(params)
        raise AssertionError(f"unexpected call {method} {table}")

    def _order_items(self, params, headers) -> List[Dict[str, Any]]:
        rows = []
        for item in self.items:
            order = self.orders[item["order_id"]]
            if not all(self._match(order, item, k, v) for k, v in params):
                continue
            rows.append(dict(item, orders=dict(order)))
        start, end = (int(x) for x in headers.get("Range", "0-9999").split("-"))
        return rows[start:end + 1]

    @staticmethod
    def _match(order, item, key, value) -> bool:
        if key in ("select", "order"):
            return True
        if key == "or":
            return item.get("product_code") is None or item["product_code"] != store.ADJUSTMENT_PRODUCT_CODE
        op, arg = value.split(".", 1)
        target = order.get(key.split(".", 1)[1]) if key.startswith("orders.") else item.get(key)
        if op == "eq":
            return target == arg
        if op == "gte":
            return target >= arg
        if op == "lte":
            return target <= arg
        raise AssertionError(f"unsupported filter {key}={value}")

    def _patch_orders(self, params, body) -> List[Dict[str, Any]]:
        (key, value), = params
        assert key == "id" and value.startswith("in.(")
        ids = [int(x) for x in value[4:-1].split(",")]
        updated = []
        for oid in ids:
            self.orders[oid].update(body)
            updated.append(dict(self.orders[oid]))
        return updated

    def _deliveries(self, params) -> List[Dict[str, Any]]:
        p = dict(params)
        code = p["customer_code"].split(".", 1)[1]
        rows = sorted((d for d in self.deliveries if d["customer_code"] == code), key=lambda d: d["id"])
        return rows[:int(p["limit"])]

    def statuses(self) -> Dict[int, str]:
        return {oid: o["status"] for oid, o in self.orders.items()}


@pytest.fixture
def fake_store(monkeypatch):
    fake = FakeRestStore()
    monkeypatch.setattr(store, "rest_call", fake)
    return fake


@pytest.fixture
def client(fake_store, monkeypatch):
    monkeypatch.setattr(app_module, "SHARED_KEY", "")
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as c:
        yield c
