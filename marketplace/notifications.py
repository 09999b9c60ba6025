import logging
import threading
from typing import Callable, Dict, Optional

from sqlalchemy import select

from marketplace.database import get_session, utcnow
from marketplace.models import Analytic, Notification

logger = logging.getLogger(__name__)

Sender = Callable[[str, dict], None]


class ConnectionRegistry:
    """Live connections by user id.

    One instance per process, owned by the app and handed to whoever
    needs to push. Entries exist only between connect and disconnect.
    """

    def __init__(self):
        self._senders: Dict[str, Sender] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: str, send: Sender) -> None:
        with self._lock:
            self._senders[user_id] = send

    def disconnect(self, user_id: str, send: Optional[Sender] = None) -> None:
        with self._lock:
            # A reconnect may already have replaced this sender
            if send is None or self._senders.get(user_id) is send:
                self._senders.pop(user_id, None)

    def is_connected(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._senders

    def push(self, user_id: str, event: str, payload: dict) -> bool:
        with self._lock:
            send = self._senders.get(user_id)
        if send is None:
            return False
        send(event, payload)
        return True

    def __len__(self):
        with self._lock:
            return len(self._senders)


class Notifier:
    def __init__(self, registry: ConnectionRegistry, session_factory=get_session):
        self.registry = registry
        self._session_factory = session_factory

    def notify(self, receiver_id: str, type: str, message: str, link: str = None) -> Optional[int]:
        """Persist and push; fire-and-forget, so errors are logged and swallowed."""
        try:
            with self._session_factory() as session:
                notification = Notification(receiver_id=receiver_id, type=type, message=message, link=link)
                session.add(notification)
                session.flush()
                payload = {
                    "id": notification.id,
                    "type": type,
                    "message": message,
                    "link": link,
                    "status": notification.status,
                }
            self.registry.push(receiver_id, "notification", payload)
            return payload["id"]
        except Exception:
            logger.warning("notification.failed receiver=%s type=%s", receiver_id, type, exc_info=True)
            return None


def record_event(session, kind: str, product_id: str, user_id: str, per_user: bool = True) -> bool:
    """Append an analytics row unless one already exists for today."""
    day = utcnow().date().isoformat()
    stmt = select(Analytic.id).where(
        Analytic.kind == kind,
        Analytic.product_id == product_id,
        Analytic.day == day,
    )
    if per_user:
        stmt = stmt.where(Analytic.user_id == user_id)
    if session.execute(stmt.limit(1)).first() is not None:
        return False
    session.add(Analytic(kind=kind, product_id=product_id, user_id=user_id, day=day))
    return True
