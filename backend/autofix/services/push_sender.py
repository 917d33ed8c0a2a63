import logging
import os
from threading import Lock
from typing import Any, List, Optional

from autofix.models import NotificationRecord

logger = logging.getLogger(__name__)


class PushSender:
    """Delivers notification records to device tokens through Firebase Cloud Messaging."""

    def __init__(self, credentials_path: Optional[str] = None) -> None:
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._initialized = False
        self._messaging: Any = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._messaging is not None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            credentials_path = (self._credentials_path or os.getenv("FIREBASE_CREDENTIALS_PATH", "")).strip()
            if not credentials_path:
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                logger.exception("Push delivery disabled: firebase-admin is not installed")
                return
            try:
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(credentials_path))
            except Exception:
                logger.exception("Push delivery disabled: Firebase init failed")
                return
            self._messaging = messaging
            logger.info("Push delivery initialized")

    def deliver(self, record: NotificationRecord, tokens: List[str]) -> List[str]:
        """Send one notification; returns the tokens Firebase rejected as invalid."""
        if not tokens or not self.enabled:
            return []
        messaging = self._messaging
        try:
            message = messaging.MulticastMessage(
                notification=messaging.Notification(title=record.title, body=record.body),
                tokens=tokens,
                data={
                    "notification_id": record.id,
                    "type": record.type,
                    "request_id": record.request_id or "",
                    "deep_link": record.deep_link or "",
                },
            )
            batch = messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push delivery failed for notification %s", record.id)
            return []
        invalid: List[str] = []
        for idx, response in enumerate(batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text:
                invalid.append(tokens[idx])
        return invalid


push_sender = PushSender()
