"""
In-memory Supabase stub for billing tests.

Supports the table chains the db modules use plus the credit procedures,
emulated with the same rules as supabase/migrations.

Usage:
    from tests.helpers.supabase_stub import SupabaseStub

    def test_my_function(monkeypatch):
        stub = SupabaseStub()
        monkeypatch.setattr("upscale_billing.config.supabase_config.get_supabase_client", lambda: stub)
"""

from collections import defaultdict
from datetime import UTC, datetime

from postgrest.exceptions import APIError


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count

    def execute(self):
        return self


class _Query:
    def __init__(self, stub, table, op, payload=None):
        self.stub = stub
        self.table = table
        self.op = op
        self.payload = payload
        self._filters = []
        self._order = None
        self._limit = None

    def select(self, *_cols, count=None):
        return self

    def eq(self, field, value):
        self._filters.append(("eq", field, value))
        return self

    def gt(self, field, value):
        self._filters.append(("gt", field, value))
        return self

    def lt(self, field, value):
        self._filters.append(("lt", field, value))
        return self

    def in_(self, field, values):
        self._filters.append(("in", field, values))
        return self

    def order(self, field, desc=False):
        self._order = (field, desc)
        return self

    def limit(self, n):
        self._limit = n
        return self

    def _match(self, row):
        for op, field, value in self._filters:
            rv = row.get(field)
            if op == "eq" and rv != value:
                return False
            if op == "gt" and (rv is None or rv <= value):
                return False
            if op == "lt" and (rv is None or rv >= value):
                return False
            if op == "in" and rv not in value:
                return False
        return True

    def execute(self):
        self.stub.calls.append((self.table, self.op))
        self.stub.raise_injected(self.table, self.op)
        rows = self.stub.tables[self.table]

        if self.op == "select":
            matched = [r.copy() for r in rows if self._match(r)]
            if self._order:
                field, desc = self._order
                matched.sort(key=lambda r: r.get(field) or "", reverse=bool(desc))
            if self._limit is not None:
                matched = matched[: self._limit]
            return _Result(matched)

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in items:
                self.stub.check_unique(self.table, item)
                row = {"id": self.stub.next_id(self.table), "created_at": self.stub.now(), **item}
                rows.append(row)
                inserted.append(row.copy())
            return _Result(inserted)

        if self.op == "upsert":
            item = dict(self.payload)
            for row in rows:
                if row.get("id") == item.get("id"):
                    row.update(item)
                    return _Result([row.copy()])
            rows.append(item)
            return _Result([item.copy()])

        if self.op == "update":
            updated = []
            for row in rows:
                if self._match(row):
                    row.update(self.payload)
                    updated.append(row.copy())
            return _Result(updated)

        if self.op == "delete":
            kept, deleted = [], []
            for row in rows:
                (deleted if self._match(row) else kept).append(row)
            rows[:] = kept
            return _Result(deleted)

        raise AssertionError(f"unsupported op {self.op}")


class _TableShim:
    def __init__(self, stub, name):
        self._stub = stub
        self._name = name

    def select(self, *cols, count=None):
        return _Query(self._stub, self._name, "select")

    def insert(self, payload):
        return _Query(self._stub, self._name, "insert", payload)

    def upsert(self, payload):
        return _Query(self._stub, self._name, "upsert", payload)

    def update(self, payload):
        return _Query(self._stub, self._name, "update", payload)

    def delete(self):
        return _Query(self._stub, self._name, "delete")


class _RPCShim:
    def __init__(self, stub, fn_name, params):
        self.stub = stub
        self.fn_name = fn_name
        self.params = params or {}

    def execute(self):
        self.stub.rpc_calls.append((self.fn_name, dict(self.params)))
        self.stub.raise_injected("rpc", self.fn_name)
        handler = getattr(self.stub, f"_rpc_{self.fn_name}", None)
        if handler is None:
            raise AssertionError(f"unexpected rpc {self.fn_name}")
        return _Result(handler(**self.params))


class SupabaseStub:
    """
    Enough of supabase-py for the billing modules: table chains plus the
    credit procedures, emulated with the same rules as the SQL migration.
    """

    UNIQUE_KEYS = {"webhook_events": "event_id"}
    # credit_transactions types covered by the per-user unique ref_id index
    APPLIED_REF_TYPES = ("subscription", "purchase", "schedule_reset")

    def __init__(self):
        self.tables = defaultdict(list)
        self.calls = []
        self.rpc_calls = []
        self._injected = defaultdict(list)

    # ---- supabase-py surface ----

    def table(self, name):
        return _TableShim(self, name)

    def rpc(self, fn_name, params=None):
        return _RPCShim(self, fn_name, params)

    # ---- helpers for tests ----

    def inject_error(self, table, op, error, times=1):
        self._injected[(table, op)].extend([error] * times)

    def raise_injected(self, table, op):
        queue = self._injected.get((table, op))
        if queue:
            raise queue.pop(0)

    def check_unique(self, table, item):
        key = self.UNIQUE_KEYS.get(table)
        if key and any(r.get(key) == item.get(key) for r in self.tables[table]):
            raise APIError(
                {
                    "code": "23505",
                    "message": f'duplicate key value violates unique constraint "{table}_{key}_key"',
                    "details": None,
                    "hint": None,
                }
            )

    def next_id(self, table):
        return len(self.tables[table]) + 1

    @staticmethod
    def now():
        return datetime.now(UTC).isoformat()

    def add_profile(self, user_id="user-1", customer_id="cus_123", status="none", tier=None, subscription=0, purchased=0):
        row = {
            "id": user_id,
            "email": f"{user_id}@example.com",
            "stripe_customer_id": customer_id,
            "subscription_status": status,
            "subscription_tier": tier,
            "subscription_credits_balance": subscription,
            "purchased_credits_balance": purchased,
        }
        self.tables["profiles"].append(row)
        return row

    def profile(self, user_id="user-1"):
        return next(r for r in self.tables["profiles"] if r["id"] == user_id)

    def balance(self, user_id="user-1"):
        row = self.profile(user_id)
        return row["subscription_credits_balance"] + row["purchased_credits_balance"]

    def transactions(self, user_id="user-1", tx_type=None):
        return [
            r
            for r in self.tables["credit_transactions"]
            if r["user_id"] == user_id and (tx_type is None or r["type"] == tx_type)
        ]

    def _log_tx(self, **row):
        row.setdefault("metadata", {})
        row["id"] = self.next_id("credit_transactions")
        row["created_at"] = self.now()
        self.tables["credit_transactions"].append(row)

    # ---- credit procedures ----

    def _ref_applied(self, user_id, ref_id):
        return ref_id is not None and any(
            r.get("ref_id") == ref_id and r["type"] in self.APPLIED_REF_TYPES for r in self.transactions(user_id)
        )

    def _grant(self, column, tx_type, pool, target_user_id, amount, ref_id=None, description=None):
        if amount <= 0:
            raise APIError({"code": "P0001", "message": f"Amount must be positive: {amount}"})
        profile = self.profile(target_user_id)
        if self._ref_applied(target_user_id, ref_id):
            return [{"balance": profile[column], "applied": False}]
        profile[column] += amount
        self._log_tx(
            user_id=target_user_id,
            amount=amount,
            balance_after=profile[column],
            type=tx_type,
            pool=pool,
            ref_id=ref_id,
            description=description,
        )
        return [{"balance": profile[column], "applied": True}]

    def _rpc_add_subscription_credits(self, **params):
        return self._grant("subscription_credits_balance", "subscription", "subscription", **params)

    def _rpc_add_purchased_credits(self, **params):
        return self._grant("purchased_credits_balance", "purchase", "purchased", **params)

    def _rpc_expire_subscription_credits(
        self,
        target_user_id,
        expiration_reason="cycle_end",
        subscription_stripe_id=None,
        cycle_end_date=None,
        cycle_ref_id=None,
    ):
        profile = self.profile(target_user_id)
        expired = profile["subscription_credits_balance"]
        if expired <= 0:
            return 0
        if cycle_ref_id is not None and any(
            r.get("ref_id") == cycle_ref_id for r in self.transactions(target_user_id, "subscription")
        ):
            return 0
        profile["subscription_credits_balance"] = 0
        self._log_tx(
            user_id=target_user_id,
            amount=-expired,
            balance_after=0,
            type="expired",
            pool="subscription",
            ref_id=subscription_stripe_id,
            description=f"Subscription credits expired ({expiration_reason})",
        )
        return expired

    def _rpc_reset_subscription_credits(
        self, p_target_user_id, p_new_amount, p_ref_id, p_description=None, p_tier=None, p_metadata=None
    ):
        if p_new_amount < 0:
            raise APIError({"code": "P0001", "message": f"Reset amount must not be negative: {p_new_amount}"})
        profile = self.profile(p_target_user_id)
        old_balance = profile["subscription_credits_balance"]
        if self._ref_applied(p_target_user_id, p_ref_id):
            return [{"balance": old_balance, "applied": False}]
        profile["subscription_credits_balance"] = p_new_amount
        if p_tier is not None:
            profile["subscription_tier"] = p_tier
        self._log_tx(
            user_id=p_target_user_id,
            amount=p_new_amount - old_balance,
            balance_after=p_new_amount,
            type="schedule_reset",
            pool="subscription",
            ref_id=p_ref_id,
            description=p_description,
            metadata={**(p_metadata or {}), "previous_balance": old_balance},
        )
        return [{"balance": p_new_amount, "applied": True}]

    def _rpc_clawback_credits_from_transaction(self, p_target_user_id, p_original_ref_id, p_reason="Full refund"):
        profile = self.profile(p_target_user_id)
        sub_balance = profile["subscription_credits_balance"]
        purchased_balance = profile["purchased_credits_balance"]
        total = sub_balance + purchased_balance

        grants = [
            r
            for r in self.transactions(p_target_user_id)
            if r["ref_id"] == p_original_ref_id and r["type"] in ("subscription", "purchase") and r["amount"] > 0
        ]
        granted_sub = sum(r["amount"] for r in grants if r["pool"] == "subscription")
        granted_purchased = sum(r["amount"] for r in grants if r["pool"] == "purchased")
        if granted_sub + granted_purchased == 0:
            return [{"success": False, "credits_clawed_back": 0, "new_balance": total,
                     "error_message": "No credits found to clawback from transaction"}]

        already = -sum(
            r["amount"]
            for r in self.transactions(p_target_user_id, "clawback")
            if r["ref_id"] == f"{p_original_ref_id}_clawback"
        )
        remaining = granted_sub + granted_purchased - already
        if remaining <= 0:
            return [{"success": False, "credits_clawed_back": 0, "new_balance": total,
                     "error_message": "Credits already clawed back for this transaction"}]

        take_sub = min(remaining, sub_balance, max(granted_sub, remaining - granted_purchased))
        take_purchased = min(remaining - take_sub, purchased_balance)
        profile["subscription_credits_balance"] -= take_sub
        profile["purchased_credits_balance"] -= take_purchased
        new_total = total - take_sub - take_purchased

        self._log_tx(
            user_id=p_target_user_id,
            amount=-remaining,
            balance_after=new_total,
            type="clawback",
            pool=None,
            ref_id=f"{p_original_ref_id}_clawback",
            description=p_reason,
            metadata={"removed": take_sub + take_purchased, "original_ref_id": p_original_ref_id},
        )
        return [{"success": True, "credits_clawed_back": take_sub + take_purchased,
                 "new_balance": new_total, "error_message": None}]

