# -*- coding: utf-8 -*-
"""Crediting store purchases exactly once per purchase token."""

import logging
from typing import Any, Mapping

from caradvisor.catalog import credits_for_product
from caradvisor.ledger import CreditLedger, PurchaseResult
from caradvisor.utils.validation import validate_purchase_request

logger = logging.getLogger(__name__)


class PurchaseService:
    def __init__(self, ledger: CreditLedger, catalog: Mapping[str, int]):
        self.ledger = ledger
        self.catalog = dict(catalog)

    def add_credits(self, user_id: str, payload: Any) -> PurchaseResult:
        """
        Validate the receipt, resolve the product and apply it.

        Validation and catalog lookup run before any transaction is opened, so
        a rejected request never touches the ledger.
        """
        params = validate_purchase_request(payload)
        amount = credits_for_product(params["productId"], self.catalog)
        meta = {
            "platform": params["platform"],
            "packageName": params["packageName"],
            "productId": params["productId"],
        }
        result = self.ledger.apply_purchase(params["purchaseToken"], user_id, amount, meta)
        logger.info(
            "[PURCHASE] user=%s product=%s platform=%s already_processed=%s total=%s",
            user_id,
            params["productId"],
            params["platform"],
            result.already_processed,
            result.total,
        )
        return result
