"""Wallet ledger and commitment-fee escrow.

Balances live in ``wallets`` as integer minor units so every debit and credit
is a single atomic ``$inc``. A debit only matches when the balance covers it.

Each party of a swap order has at most one escrow hold (unique on
``order_id`` + ``party``). Holds leave the ``held`` status through a
conditional update, so concurrent release/refund calls move the money once.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import CURRENCY, SETTLEMENT_ACCOUNT_ID
from errors import PaymentError
from logger import setup_logger
from models.payment_models import EscrowHold, HoldSource, HoldStatus

logger = setup_logger(__name__)


class EscrowService:
    def __init__(self, database, settlement_account_id: str = SETTLEMENT_ACCOUNT_ID, currency: str = CURRENCY):
        self.db = database
        self.settlement_account_id = settlement_account_id
        self.currency = currency

    # Wallet ledger

    async def get_balance(self, user_id: str) -> int:
        wallet = await self.db.wallets.find_one({"user_id": user_id})
        return wallet.get("balance_minor", 0) if wallet else 0

    async def credit(self, user_id: str, amount_minor: int, description: str,
                     reference: Optional[str] = None, order_id: Optional[str] = None) -> int:
        wallet = await self.db.wallets.find_one_and_update(
            {"user_id": user_id},
            {
                "$inc": {"balance_minor": amount_minor},
                "$setOnInsert": {"currency": self.currency, "created_at": datetime.utcnow()},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        await self._record(user_id, "credit", amount_minor, wallet["balance_minor"], description, reference, order_id)
        return wallet["balance_minor"]

    async def debit(self, user_id: str, amount_minor: int, description: str,
                    reference: Optional[str] = None, order_id: Optional[str] = None) -> int:
        wallet = await self.db.wallets.find_one_and_update(
            {"user_id": user_id, "balance_minor": {"$gte": amount_minor}},
            {"$inc": {"balance_minor": -amount_minor}},
            return_document=ReturnDocument.AFTER,
        )
        if wallet is None:
            logger.info("Wallet debit declined for user %s (amount %s)", user_id, amount_minor)
            raise PaymentError("Insufficient wallet balance to pay the commitment fee")
        await self._record(user_id, "debit", amount_minor, wallet["balance_minor"], description, reference, order_id)
        return wallet["balance_minor"]

    async def _record(self, user_id, tx_type, amount_minor, balance_after, description, reference, order_id):
        await self.db.wallet_transactions.insert_one({
            "user_id": user_id,
            "type": tx_type,
            "amount_minor": amount_minor,
            "balance_after_minor": balance_after,
            "currency": self.currency,
            "description": description,
            "reference": reference,
            "order_id": order_id,
            "created_at": datetime.utcnow(),
        })

    # Escrow holds

    async def find_hold(self, order_id: str, party: str) -> Optional[Dict[str, Any]]:
        return await self.db.escrow_holds.find_one({"order_id": order_id, "party": party})

    async def hold_from_wallet(self, order_id: str, party: str, payer_id: str,
                               amount_minor: int) -> Tuple[Dict[str, Any], bool]:
        """Move a commitment fee from the payer's wallet into escrow.

        Returns ``(hold, created)``. An existing hold for the same party is
        returned untouched, so a retried payment never debits twice.
        """
        existing = await self.find_hold(order_id, party)
        if existing:
            return existing, False

        reference = f"WALLET-{order_id}-{party}"
        await self.debit(payer_id, amount_minor, f"Commitment fee held in escrow for swap order {order_id}",
                         reference=reference, order_id=order_id)
        hold = EscrowHold(
            order_id=order_id,
            party=party,
            payer_id=payer_id,
            amount_minor=amount_minor,
            currency=self.currency,
            source=HoldSource.WALLET,
            reference=reference,
        ).model_dump()
        try:
            await self.db.escrow_holds.insert_one(hold)
        except DuplicateKeyError:
            # a concurrent request won the race; give this debit back
            await self.credit(payer_id, amount_minor, f"Duplicate commitment fee returned for swap order {order_id}",
                              reference=reference, order_id=order_id)
            return await self.find_hold(order_id, party), False

        logger.info("Held %s from wallet of %s for order %s (%s)", amount_minor, payer_id, order_id, party)
        return hold, True

    async def hold_from_gateway(self, order_id: str, party: str, payer_id: str,
                                amount_minor: int, reference: str) -> Tuple[Dict[str, Any], bool]:
        """Record a gateway-captured commitment fee as an escrow hold.

        The money has already left the payer, so a second capture for a party
        that is already covered is returned to the payer's wallet.
        """
        existing = await self.find_hold(order_id, party)
        if existing is None:
            hold = EscrowHold(
                order_id=order_id,
                party=party,
                payer_id=payer_id,
                amount_minor=amount_minor,
                currency=self.currency,
                source=HoldSource.PAYSTACK,
                reference=reference,
            ).model_dump()
            try:
                await self.db.escrow_holds.insert_one(hold)
                logger.info("Held gateway payment %s for order %s (%s)", reference, order_id, party)
                return hold, True
            except DuplicateKeyError:
                existing = await self.find_hold(order_id, party)

        if existing.get("reference") != reference:
            await self.refund_payment(payer_id, amount_minor, reference, order_id,
                                      "Duplicate commitment fee payment returned")
        return existing, False

    async def release_order(self, order_id: str) -> int:
        """Release every held fee of a completed order to the settlement account."""
        total = 0
        async for hold in self.db.escrow_holds.find({"order_id": order_id, "status": HoldStatus.HELD.value}):
            claimed = await self._settle_hold(hold, HoldStatus.RELEASED)
            if claimed:
                await self.credit(self.settlement_account_id, hold["amount_minor"],
                                  f"Commitment fee released for swap order {order_id}",
                                  reference=hold.get("reference"), order_id=order_id)
                total += hold["amount_minor"]
        logger.info("Released %s to settlement for order %s", total, order_id)
        return total

    async def has_held(self, order_id: str) -> bool:
        return await self.db.escrow_holds.find_one({"order_id": order_id, "status": HoldStatus.HELD.value}) is not None

    async def refund_order(self, order_id: str) -> int:
        """Return every held fee of a cancelled order to whoever paid it."""
        total = 0
        async for hold in self.db.escrow_holds.find({"order_id": order_id, "status": HoldStatus.HELD.value}):
            total += await self.refund_hold(hold, f"Commitment fee refunded for cancelled swap order {order_id}")
        if total:
            logger.info("Refunded %s for order %s", total, order_id)
        return total

    async def refund_hold(self, hold: Dict[str, Any], description: str) -> int:
        """Return one held fee to its payer; 0 when the hold was already settled."""
        if not await self._settle_hold(hold, HoldStatus.REFUNDED):
            return 0
        await self.credit(hold["payer_id"], hold["amount_minor"], description,
                          reference=hold.get("reference"), order_id=hold["order_id"])
        return hold["amount_minor"]

    async def refund_payment(self, payer_id: str, amount_minor: int, reference: str,
                             order_id: Optional[str], reason: str) -> int:
        logger.warning("Refunding payment %s of %s to %s: %s", reference, amount_minor, payer_id, reason)
        return await self.credit(payer_id, amount_minor, reason, reference=reference, order_id=order_id)

    async def _settle_hold(self, hold: Dict[str, Any], status: HoldStatus) -> bool:
        claimed = await self.db.escrow_holds.find_one_and_update(
            {"_id": hold["_id"], "status": HoldStatus.HELD.value},
            {"$set": {"status": status.value, "settled_at": datetime.utcnow()}},
        )
        return claimed is not None
