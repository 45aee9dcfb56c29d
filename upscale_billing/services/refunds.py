#!/usr/bin/env python3
"""
Refund clawback
Reverses credits granted for an invoice when its charge is refunded.

Correlation runs through the grant's ref id (`invoice_{id}`). A charge with no
invoice cannot be correlated and is left alone. Dispute and invoice-refund
events are acknowledged and logged; automated handling for them is not built yet.
"""

import logging

from upscale_billing.config.config import WebhookSettings
from upscale_billing.db import credit_ledger
from upscale_billing.db.credit_ledger import ClawbackResult
from upscale_billing.schemas.billing import ChargeSnapshot
from upscale_billing.services.reconciler import lookup_profile
from upscale_billing.utils.exceptions import PersistenceWriteError

logger = logging.getLogger(__name__)


class RefundHandler:
    def __init__(self, settings: WebhookSettings):
        self.settings = settings

    def handle_charge_refunded(self, charge: ChargeSnapshot) -> ClawbackResult | None:
        if charge.amount_refunded <= 0:
            logger.info(f"Charge {charge.id} has no refund amount, skipping")
            return None

        profile = lookup_profile(charge.customer_id, self.settings.test_mode)
        if profile is None:
            return None

        if not charge.invoice_id:
            logger.warning(
                f"Refunded charge {charge.id} has no invoice; credits cannot be correlated and are not clawed back"
            )
            return None

        user_id = profile["id"]
        try:
            result = credit_ledger.clawback_credits(
                user_id,
                f"invoice_{charge.invoice_id}",
                f"Refund for charge {charge.id} ({charge.amount_refunded} cents)",
            )
        except Exception as e:
            logger.error(f"Clawback RPC failed for charge {charge.id}: {e}", exc_info=True)
            raise PersistenceWriteError(f"Failed to claw back credits for charge {charge.id}: {e}") from e

        if result.success:
            logger.info(
                f"Clawed back {result.credits_clawed_back} credits from user {user_id} "
                f"for charge {charge.id} (balance: {result.new_balance})"
            )
        else:
            # Nothing left to claw back (never granted, or already reversed)
            logger.warning(f"No clawback for charge {charge.id}: {result.error_message}")
        return result

    def handle_dispute_created(self, dispute: dict) -> None:
        logger.warning(
            f"Dispute {dispute.get('id')} opened for charge {dispute.get('charge')}; "
            "no automated credit action, review manually"
        )

    def handle_invoice_refunded(self, invoice: dict) -> None:
        logger.info(f"Invoice {invoice.get('id')} refunded; credits are reversed via charge.refunded")
