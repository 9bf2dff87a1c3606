"""
Notification Service
Writes in-app notifications for buyers and sellers at escrow milestones
"""

import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Notification sink for the settlement flow

    add() joins the caller's session so the notification commits together with the
    state change it describes; send() is for standalone notifications.
    """

    def _format_amount(self, amount, chain: Optional[str] = None) -> str:
        if amount is None:
            return "XRPB"
        value = Decimal(str(amount)).normalize()
        suffix = f" on {chain}" if chain else ""
        return f"{format(value, 'f')} XRPB{suffix}"

    def add(self, session: AsyncSession, user_id: Optional[str], notification_type: NotificationType,
            message: str) -> Optional[Notification]:
        if not user_id:
            logger.warning(f"⚠️ NOTIFICATION: skipped {notification_type.value} (no recipient)")
            return None
        notification = Notification(
            user_id=str(user_id),
            type=notification_type.value,
            message=message,
            is_read=False,
        )
        session.add(notification)
        logger.info(f"📱 NOTIFICATION: {notification_type.value} -> {user_id}")
        return notification

    # Message builders

    def order_received(self, session, seller_user_id, listing_title: Optional[str], amount, chain):
        title = listing_title or "your listing"
        return self.add(
            session, seller_user_id, NotificationType.ORDER_RECEIVED,
            f"New order for {title}: {self._format_amount(amount, chain)} is waiting for buyer payment."
        )

    def wallet_setup_required(self, session, seller_user_id, chain: str):
        return self.add(
            session, seller_user_id, NotificationType.WALLET_SETUP,
            f"A buyer chose to pay on {chain}. Add a {chain} wallet address to receive this payout."
        )

    def escrow_funded(self, session, user_id, escrow_id: str, amount, chain):
        return self.add(
            session, user_id, NotificationType.ESCROW_FUNDED,
            f"Escrow {escrow_id} funded with {self._format_amount(amount, chain)}."
        )

    def escrow_released(self, session, user_id, escrow_id: str, amount, chain):
        return self.add(
            session, user_id, NotificationType.ESCROW_RELEASED,
            f"Escrow {escrow_id} released: {self._format_amount(amount, chain)} sent."
        )

    def escrow_disputed(self, session, user_id, escrow_id: str, reason: str):
        return self.add(
            session, user_id, NotificationType.ESCROW_DISPUTED,
            f"Escrow {escrow_id} is under dispute: {reason}"
        )

    def auto_released(self, session, user_id, escrow_id: str, amount, chain, refunded: bool):
        if refunded:
            message = (f"Escrow {escrow_id} was not completed in time. "
                       f"{self._format_amount(amount, chain)} has been returned to your wallet.")
        else:
            message = (f"Escrow {escrow_id} expired without confirmation and "
                       f"{self._format_amount(amount, chain)} was returned to the buyer.")
        return self.add(session, user_id, NotificationType.AUTO_RELEASE, message)


_notification_service: Optional[NotificationService] = None


def get_notification_service() -> NotificationService:
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
