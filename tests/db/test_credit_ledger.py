#!/usr/bin/env python3
"""
Tests for the credit ledger wrappers

The stub emulates the stored procedures, so these tests exercise both the
wrapper parameter contract and the balance rules the procedures enforce.
"""

from datetime import UTC, datetime
from unittest.mock import Mock, patch

import pytest

from upscale_billing.db import credit_ledger


class TestGrantCredits:
    def test_subscription_grant_calls_procedure(self, sb):
        sb.add_profile(subscription=100)

        change = credit_ledger.grant_subscription_credits("user-1", 200, "invoice_in_1", "Renewal")

        assert change.balance == 300
        assert change.applied is True
        name, params = sb.rpc_calls[0]
        assert name == "add_subscription_credits"
        assert params == {
            "target_user_id": "user-1",
            "amount": 200,
            "ref_id": "invoice_in_1",
            "description": "Renewal",
        }
        tx = sb.transactions(tx_type="subscription")[0]
        assert tx["ref_id"] == "invoice_in_1"
        assert tx["balance_after"] == 300

    def test_purchased_grant_uses_purchased_pool(self, sb):
        sb.add_profile(subscription=10, purchased=5)

        change = credit_ledger.grant_purchased_credits("user-1", 50, "pi_1", "Small pack")

        assert change.balance == 55
        assert sb.rpc_calls[0][0] == "add_purchased_credits"
        assert sb.profile()["subscription_credits_balance"] == 10

    @pytest.mark.parametrize("amount", [0, -5])
    def test_rejects_non_positive_amount(self, sb, amount):
        sb.add_profile()

        with pytest.raises(ValueError):
            credit_ledger.grant_subscription_credits("user-1", amount, "ref", "nope")

        assert sb.rpc_calls == []

    def test_rpc_errors_propagate(self, sb):
        sb.add_profile()
        sb.inject_error("rpc", "add_subscription_credits", RuntimeError("deadlock detected"))

        with pytest.raises(RuntimeError, match="deadlock"):
            credit_ledger.grant_subscription_credits("user-1", 10, "ref", "grant")

    def test_repeated_ref_is_not_granted_twice(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Checkout")

        change = credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Renewal")

        assert change.applied is False
        assert change.balance == 1000
        assert sb.balance() == 1000
        assert len(sb.transactions(tx_type="subscription")) == 1

    def test_same_ref_for_another_user_is_granted(self, sb):
        sb.add_profile(user_id="user-1", customer_id="cus_1", subscription=0)
        sb.add_profile(user_id="user-2", customer_id="cus_2", subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 10, "invoice_in_1", "grant")

        assert credit_ledger.grant_subscription_credits("user-2", 10, "invoice_in_1", "grant").applied is True

    def test_audit_row_does_not_block_grant(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.record_audit_entry("user-1", "upgrade_blocked", "blocked", ref_id="invoice_in_1")

        change = credit_ledger.grant_subscription_credits("user-1", 10, "invoice_in_1", "grant")

        assert change.applied is True
        assert sb.balance() == 10

    def test_procedure_row_is_parsed(self):
        result = Mock()
        result.data = [{"balance": 42, "applied": True}]
        with patch.object(credit_ledger, "execute_with_retry", return_value=result):
            change = credit_ledger.grant_subscription_credits("user-1", 2, "ref", "grant")

        assert change == credit_ledger.BalanceChange(balance=42, applied=True)


class TestExpireSubscriptionCredits:
    def test_expires_subscription_pool_only(self, sb):
        sb.add_profile(subscription=180, purchased=40)
        cycle_end = datetime(2026, 2, 1, tzinfo=UTC)

        expired = credit_ledger.expire_subscription_credits("user-1", "cycle_end", "sub_1", cycle_end)

        assert expired == 180
        assert sb.profile()["subscription_credits_balance"] == 0
        assert sb.profile()["purchased_credits_balance"] == 40
        params = sb.rpc_calls[0][1]
        assert params["expiration_reason"] == "cycle_end"
        assert params["subscription_stripe_id"] == "sub_1"
        assert params["cycle_end_date"] == cycle_end.isoformat()
        assert params["cycle_ref_id"] is None

    def test_empty_pool_expires_nothing(self, sb):
        sb.add_profile(subscription=0)

        assert credit_ledger.expire_subscription_credits("user-1", "rolling_window", None, None) == 0
        assert sb.transactions(tx_type="expired") == []

    def test_cycle_already_granted_expires_nothing(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_2", "Renewal")

        expired = credit_ledger.expire_subscription_credits(
            "user-1", "cycle_end", "sub_1", None, cycle_ref_id="invoice_in_2"
        )

        assert expired == 0
        assert sb.balance() == 1000
        assert sb.transactions(tx_type="expired") == []

    def test_other_cycle_ref_still_expires(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Renewal")

        expired = credit_ledger.expire_subscription_credits(
            "user-1", "cycle_end", "sub_1", None, cycle_ref_id="invoice_in_2"
        )

        assert expired == 1000
        assert sb.rpc_calls[-1][1]["cycle_ref_id"] == "invoice_in_2"


class TestResetSubscriptionCredits:
    def test_reset_logs_signed_delta_and_sets_tier(self, sb):
        sb.add_profile(subscription=900, tier="pro", purchased=30)

        change = credit_ledger.reset_subscription_credits(
            "user-1", 200, "schedule_sub_sched_1", "Downgrade to hobby", tier="hobby",
            metadata={"subscription_id": "sub_123"},
        )

        assert change == credit_ledger.BalanceChange(balance=200, applied=True)
        profile = sb.profile()
        assert profile["subscription_credits_balance"] == 200
        assert profile["purchased_credits_balance"] == 30
        assert profile["subscription_tier"] == "hobby"
        row = sb.transactions(tx_type="schedule_reset")[0]
        assert row["amount"] == -700
        assert row["balance_after"] == 200
        assert row["metadata"] == {"subscription_id": "sub_123", "previous_balance": 900}
        name, params = sb.rpc_calls[0]
        assert name == "reset_subscription_credits"
        assert params["p_ref_id"] == "schedule_sub_sched_1"
        assert params["p_tier"] == "hobby"

    def test_reset_applies_once_per_ref(self, sb):
        sb.add_profile(subscription=900)
        credit_ledger.reset_subscription_credits("user-1", 200, "schedule_sub_sched_1", "Downgrade")
        sb.profile()["subscription_credits_balance"] = 150

        change = credit_ledger.reset_subscription_credits("user-1", 200, "schedule_sub_sched_1", "Downgrade")

        assert change.applied is False
        assert change.balance == 150
        assert sb.balance() == 150
        assert len(sb.transactions(tx_type="schedule_reset")) == 1


class TestClawbackCredits:
    """Clawbacks are bounded by what was granted under the ref"""

    def test_claws_back_granted_amount(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Renewal")

        result = credit_ledger.clawback_credits("user-1", "invoice_in_1", "Refund")

        assert result.success is True
        assert result.credits_clawed_back == 1000
        assert result.new_balance == 0
        assert sb.rpc_calls[-1][1] == {
            "p_target_user_id": "user-1",
            "p_original_ref_id": "invoice_in_1",
            "p_reason": "Refund",
        }

    def test_second_clawback_for_same_ref_takes_nothing(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Renewal")
        credit_ledger.clawback_credits("user-1", "invoice_in_1", "Refund")
        # Credits from another source must not be reachable through the old ref
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_2", "Renewal")

        result = credit_ledger.clawback_credits("user-1", "invoice_in_1", "Refund again")

        assert result.success is False
        assert result.credits_clawed_back == 0
        assert sb.balance() == 1000

    def test_partial_balance_never_goes_negative(self, sb):
        sb.add_profile(subscription=0)
        credit_ledger.grant_subscription_credits("user-1", 1000, "invoice_in_1", "Renewal")
        sb.profile()["subscription_credits_balance"] = 300

        first = credit_ledger.clawback_credits("user-1", "invoice_in_1", "Refund")
        sb.profile()["subscription_credits_balance"] = 500
        second = credit_ledger.clawback_credits("user-1", "invoice_in_1", "Refund")

        assert first.credits_clawed_back == 300
        assert second.credits_clawed_back == 0
        assert sb.balance() == 500

    def test_unknown_ref_reports_failure(self, sb):
        sb.add_profile(subscription=500)

        result = credit_ledger.clawback_credits("user-1", "invoice_never", "Refund")

        assert result.success is False
        assert "No credits found" in result.error_message
        assert sb.balance() == 500


class TestAuditEntries:
    def test_record_audit_entry_is_zero_amount(self, sb):
        credit_ledger.record_audit_entry(
            "user-1", "trial_warning", "Trial ending in 3 days", ref_id="sub_1", metadata={"days_remaining": 3}
        )

        row = sb.tables["credit_transactions"][0]
        assert row["amount"] == 0
        assert row["type"] == "trial_warning"
        assert row["metadata"] == {"days_remaining": 3}
