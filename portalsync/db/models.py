"""Database models and schema definitions."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum


class EntryKind(Enum):
    """Direction of a ledger entry."""

    INCOME = "income"
    EXPENSE = "expense"


class EntryStatus(Enum):
    """Settlement status of a ledger entry."""

    PAID = "paid"
    PENDING = "pending"


class SyncState(Enum):
    """Lifecycle state of a sync status row."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    ERROR = "error"


class PermissionLevel(Enum):
    """Access level a user holds on an intranet feature."""

    NONE = "none"
    VIEW = "view"
    EDIT = "edit"

    @property
    def rank(self) -> int:
        return _PERMISSION_RANKS[self]


_PERMISSION_RANKS = {
    PermissionLevel.NONE: 0,
    PermissionLevel.VIEW: 1,
    PermissionLevel.EDIT: 2,
}


class MessageDirection(Enum):
    """Direction of a chat message relative to the firm."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass
class Category:
    """Local financial category."""

    id: int | None
    name: str
    kind: EntryKind
    is_active: bool = True


@dataclass
class Account:
    """Local bank/cash account."""

    id: int | None
    name: str
    is_active: bool = True


@dataclass
class LedgerEntry:
    """Ledger entry, optionally linked to an external ADVBox transaction."""

    id: int | None
    external_id: str | None
    kind: EntryKind
    amount: Decimal
    description: str
    category_id: int | None
    account_id: int | None
    scheduled_date: date
    due_date: date | None = None
    paid_date: date | None = None
    status: EntryStatus = EntryStatus.PENDING
    notes: str | None = None
    origin: str = "advbox"
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class SyncStatus:
    """Progress and status of one sync type, polled by the intranet UI."""

    sync_type: str
    status: SyncState = SyncState.IDLE
    last_offset: int = 0
    total_processed: int = 0
    total_created: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    total_errors: int = 0
    window_start: date | None = None
    window_end: date | None = None
    force_update: bool = False
    stop_requested: bool = False
    error_message: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class AuditLogEntry:
    """Audit trail record."""

    id: int | None
    table_name: str
    action: str
    description: str
    user_id: str | None
    payload: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class WebhookEvent:
    """Raw messaging-gateway event with its normalized fields."""

    id: int | None
    event_type: str
    raw_payload: dict
    phone: str | None = None
    message_id: str | None = None
    zaap_id: str | None = None
    is_group: bool = False
    chat_name: str | None = None
    sender_name: str | None = None
    is_from_me: bool = False
    status: str | None = None
    message_type: str | None = None
    message_text: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    received_at: datetime = field(default_factory=datetime.now)


@dataclass
class Conversation:
    """WhatsApp conversation summary, one per phone number."""

    id: int | None
    phone: str
    name: str | None
    last_message: str | None
    last_message_at: datetime | None
    unread_count: int = 0
    is_group: bool = False


@dataclass
class Message:
    """Single chat message inside a conversation."""

    id: int | None
    conversation_id: int
    message_id: str | None
    direction: MessageDirection
    message_type: str | None
    text: str | None
    media_url: str | None = None
    media_mime_type: str | None = None
    status: str | None = None
    sent_at: datetime = field(default_factory=datetime.now)
