"""
Notification Service.

Handles creation and state management of back-office notifications.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, desc, func
from datetime import datetime
from typing import Optional, Dict, Any, List

from backend.app.models.notification import Notification, NotificationType
from backend.app.models.user import User
from backend.app.models.enums import UserRole


class NotificationService:

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        user_id: int,
        title: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Create a single notification."""
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            metadata_payload=metadata
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def broadcast(
        db: AsyncSession,
        title: str,
        message: str,
        role: Optional[UserRole] = None,
        type: NotificationType = NotificationType.INFO,
        metadata: Optional[Dict[str, Any]] = None
    ) -> int:
        """Broadcast notification to all active users or filtered by role. Caller commits."""
        query = select(User.id).where(User.is_active == True)
        if role:
            query = query.where(User.role == role)

        result = await db.execute(query)
        user_ids = result.scalars().all()

        notifications = [
            Notification(
                user_id=uid,
                title=title,
                message=message,
                type=type,
                metadata_payload=metadata
            )
            for uid in user_ids
        ]

        if notifications:
            db.add_all(notifications)

        return len(notifications)

    @staticmethod
    async def notify_discount_confirmation_required(
        db: AsyncSession,
        municipality: str,
        suggested_discount: float,
        work_order_id: int
    ) -> int:
        """Tell super admins that a municipality discount blocks settlement."""
        return await NotificationService.broadcast(
            db,
            title="Discount confirmation required",
            message=(
                f"Municipality '{municipality}' has a configured discount of {suggested_discount}% "
                f"that has not been confirmed. Work order {work_order_id} is waiting for settlement."
            ),
            role=UserRole.SUPERADMIN,
            type=NotificationType.DISCOUNT_CONFIRMATION_REQUIRED,
            metadata={
                "municipality": municipality,
                "suggested_discount": suggested_discount,
                "work_order_id": work_order_id,
            }
        )

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: int,
        unread_only: bool = False,
        type: Optional[NotificationType] = None,
        limit: int = 50
    ) -> List[Notification]:
        """Newest first."""
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)
        if type:
            query = query.where(Notification.type == type)

        query = query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def unread_count(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read == False
            )
        )
        return result.scalar_one()

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> Optional[Notification]:
        """
        Mark one of the user's notifications as read.

        Returns None when the notification does not exist or belongs to
        someone else. Marking an already read notification keeps its read_at.
        """
        result = await db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            return None

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            await db.flush()
        return notification

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        """Mark all unread notifications of a user as read. Returns the count."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        ).values(
            is_read=True,
            read_at=datetime.utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount
