"""Settlement options loaded from the store settings document.

The finalize path never reads settings mid-pass: callers load one
`SettlementOptions` per request and pass it in.
"""

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from storepay.common.logging import logger
from storepay.services.settings.models import StoreSettings

SETTINGS_KEY = "default"


class NotificationOptions(BaseModel):
    """Which in-app notification types are created."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    order_paid: bool = True
    booking_paid: bool = True
    payment_success: bool = False
    payment_failed: bool = False
    order_canceled: bool = False
    booking_canceled: bool = False


class LedgerOptions(BaseModel):
    """Ledger auto-creation switch. Auto-creation requires enabled and not manual."""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    manual_generation: bool = False


class SettlementOptions(BaseModel):
    """Explicit store configuration consumed by the settlement path."""

    model_config = ConfigDict(extra="ignore")

    create_payment_documents: bool = True
    send_payment_emails: bool = True
    notifications: NotificationOptions = Field(default_factory=NotificationOptions)
    ledger: LedgerOptions = Field(default_factory=LedgerOptions)

    @property
    def ledger_auto_create(self) -> bool:
        return self.ledger.enabled and not self.ledger.manual_generation

    def should_notify(self, notification_type: str) -> bool:
        """Gate for one notification type, e.g. `ORDER_PAID`."""

        if not self.notifications.enabled:
            return False
        return bool(getattr(self.notifications, notification_type.lower(), False))


class SettingsService:
    """Reads the store settings document and merges it over defaults."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def load_options(self) -> SettlementOptions:
        """Return the current options, or defaults when the document is missing or unreadable."""

        try:
            with self.session_factory() as db:
                row = db.get(StoreSettings, SETTINGS_KEY)
                document = dict(row.document or {}) if row else {}
        except SQLAlchemyError as exc:
            logger.warning("settings read failed, using defaults error=%s", exc)
            return SettlementOptions()
        try:
            return SettlementOptions.model_validate(document)
        except ValidationError as exc:
            logger.warning("settings document invalid, using defaults errors=%s", exc.error_count())
            return SettlementOptions()
