"""Data access layer for SQLite database."""

import json
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import aiosqlite

from portalsync.db.migrations import SCHEMA_VERSION, get_migration_sql
from portalsync.db.models import (
    Account,
    AuditLogEntry,
    Category,
    Conversation,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    Message,
    MessageDirection,
    PermissionLevel,
    SyncState,
    SyncStatus,
    WebhookEvent,
)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Repository:
    """Async repository for database operations."""

    def __init__(self, db_path: Path):
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        self._connection = await aiosqlite.connect(self._db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._run_migrations()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _run_migrations(self) -> None:
        """Run pending database migrations."""
        current_version = await self._get_schema_version()
        if current_version < SCHEMA_VERSION:
            migrations = get_migration_sql(current_version, SCHEMA_VERSION)
            for sql in migrations:
                await self._connection.executescript(sql)
            await self._connection.commit()

    async def _get_schema_version(self) -> int:
        """Get current schema version from database."""
        try:
            cursor = await self._connection.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            )
            row = await cursor.fetchone()
            return row["version"] if row else 0
        except aiosqlite.OperationalError:
            return 0

    # Permission operations

    async def save_permission(self, user_id: str, feature: str, level: PermissionLevel) -> None:
        """Grant a permission level on a feature to a user."""
        await self._connection.execute(
            """INSERT INTO user_permissions (user_id, feature, level) VALUES (?, ?, ?)
               ON CONFLICT(user_id, feature) DO UPDATE SET level = excluded.level""",
            (user_id, feature, level.value),
        )
        await self._connection.commit()

    async def get_permission(self, user_id: str, feature: str) -> PermissionLevel:
        """Get the permission level a user holds on a feature."""
        cursor = await self._connection.execute(
            "SELECT level FROM user_permissions WHERE user_id = ? AND feature = ?",
            (user_id, feature),
        )
        row = await cursor.fetchone()
        return PermissionLevel(row["level"]) if row else PermissionLevel.NONE

    # Category operations

    async def save_category(self, category: Category) -> Category:
        """Save or update a category."""
        if category.id is None:
            cursor = await self._connection.execute(
                "INSERT INTO categories (name, kind, is_active) VALUES (?, ?, ?)",
                (category.name, category.kind.value, int(category.is_active)),
            )
            category_id = cursor.lastrowid
        else:
            await self._connection.execute(
                "UPDATE categories SET name=?, kind=?, is_active=? WHERE id=?",
                (category.name, category.kind.value, int(category.is_active), category.id),
            )
            category_id = category.id
        await self._connection.commit()
        return await self.get_category_by_id(category_id)

    async def get_category_by_id(self, category_id: int) -> Category | None:
        """Get category by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM categories WHERE id = ?", (category_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_category(row) if row else None

    async def get_active_categories(self, kind: EntryKind | None = None) -> list[Category]:
        """Get active categories in creation order, optionally of one kind."""
        if kind is None:
            cursor = await self._connection.execute(
                "SELECT * FROM categories WHERE is_active = 1 ORDER BY id"
            )
        else:
            cursor = await self._connection.execute(
                "SELECT * FROM categories WHERE is_active = 1 AND kind = ? ORDER BY id",
                (kind.value,),
            )
        rows = await cursor.fetchall()
        return [self._row_to_category(row) for row in rows]

    def _row_to_category(self, row: aiosqlite.Row) -> Category:
        """Convert database row to Category object."""
        return Category(
            id=row["id"],
            name=row["name"],
            kind=EntryKind(row["kind"]),
            is_active=bool(row["is_active"]),
        )

    # Account operations

    async def save_account(self, account: Account) -> Account:
        """Save or update an account."""
        if account.id is None:
            cursor = await self._connection.execute(
                "INSERT INTO accounts (name, is_active) VALUES (?, ?)",
                (account.name, int(account.is_active)),
            )
            account_id = cursor.lastrowid
        else:
            await self._connection.execute(
                "UPDATE accounts SET name=?, is_active=? WHERE id=?",
                (account.name, int(account.is_active), account.id),
            )
            account_id = account.id
        await self._connection.commit()
        return await self.get_account_by_id(account_id)

    async def get_account_by_id(self, account_id: int) -> Account | None:
        """Get account by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_account(row) if row else None

    async def get_active_accounts(self) -> list[Account]:
        """Get all active accounts in creation order."""
        cursor = await self._connection.execute(
            "SELECT * FROM accounts WHERE is_active = 1 ORDER BY id"
        )
        rows = await cursor.fetchall()
        return [self._row_to_account(row) for row in rows]

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        """Convert database row to Account object."""
        return Account(id=row["id"], name=row["name"], is_active=bool(row["is_active"]))

    # Ledger entry operations

    async def insert_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        """Insert a new ledger entry.

        Raises aiosqlite.IntegrityError when another entry already holds
        the same external_id.
        """
        try:
            cursor = await self._connection.execute(
                """INSERT INTO ledger_entries (external_id, kind, amount, description,
                   category_id, account_id, scheduled_date, due_date, paid_date, status,
                   notes, origin, created_by, updated_by, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry.external_id,
                    entry.kind.value,
                    str(entry.amount),
                    entry.description,
                    entry.category_id,
                    entry.account_id,
                    entry.scheduled_date.isoformat(),
                    _iso(entry.due_date),
                    _iso(entry.paid_date),
                    entry.status.value,
                    entry.notes,
                    entry.origin,
                    entry.created_by,
                    entry.updated_by,
                    entry.created_at.isoformat(),
                    entry.updated_at.isoformat(),
                ),
            )
        except aiosqlite.IntegrityError:
            await self._connection.rollback()
            raise
        await self._connection.commit()
        return await self.get_ledger_entry_by_id(cursor.lastrowid)

    async def update_ledger_entry_by_external_id(self, entry: LedgerEntry) -> LedgerEntry | None:
        """Overwrite the mutable fields of the entry holding entry.external_id.

        The local id, created_by and created_at of the stored entry are kept.
        """
        cursor = await self._connection.execute(
            """UPDATE ledger_entries SET kind=?, amount=?, description=?, category_id=?,
               account_id=?, scheduled_date=?, due_date=?, paid_date=?, status=?,
               notes=?, origin=?, updated_by=?, updated_at=?
               WHERE external_id=?""",
            (
                entry.kind.value,
                str(entry.amount),
                entry.description,
                entry.category_id,
                entry.account_id,
                entry.scheduled_date.isoformat(),
                _iso(entry.due_date),
                _iso(entry.paid_date),
                entry.status.value,
                entry.notes,
                entry.origin,
                entry.updated_by,
                entry.updated_at.isoformat(),
                entry.external_id,
            ),
        )
        await self._connection.commit()
        if cursor.rowcount == 0:
            return None
        return await self.get_ledger_entry_by_external_id(entry.external_id)

    async def get_ledger_entry_by_id(self, entry_id: int) -> LedgerEntry | None:
        """Get ledger entry by ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM ledger_entries WHERE id = ?", (entry_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_ledger_entry(row) if row else None

    async def get_ledger_entry_by_external_id(self, external_id: str) -> LedgerEntry | None:
        """Get ledger entry by external (ADVBox) ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM ledger_entries WHERE external_id = ?", (external_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_ledger_entry(row) if row else None

    async def get_all_ledger_entries(self) -> list[LedgerEntry]:
        """Get all ledger entries ordered by scheduled date."""
        cursor = await self._connection.execute(
            "SELECT * FROM ledger_entries ORDER BY scheduled_date ASC, id ASC"
        )
        rows = await cursor.fetchall()
        return [self._row_to_ledger_entry(row) for row in rows]

    async def count_ledger_entries(self) -> int:
        """Count all ledger entries."""
        cursor = await self._connection.execute("SELECT COUNT(*) AS n FROM ledger_entries")
        row = await cursor.fetchone()
        return row["n"]

    def _row_to_ledger_entry(self, row: aiosqlite.Row) -> LedgerEntry:
        """Convert database row to LedgerEntry object."""
        return LedgerEntry(
            id=row["id"],
            external_id=row["external_id"],
            kind=EntryKind(row["kind"]),
            amount=Decimal(row["amount"]),
            description=row["description"],
            category_id=row["category_id"],
            account_id=row["account_id"],
            scheduled_date=date.fromisoformat(row["scheduled_date"]),
            due_date=_parse_date(row["due_date"]),
            paid_date=_parse_date(row["paid_date"]),
            status=EntryStatus(row["status"]),
            notes=row["notes"],
            origin=row["origin"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Financial sync snapshot operations

    async def save_sync_record(self, external_id: str, payload: dict) -> None:
        """Store the latest raw upstream payload for an external transaction."""
        await self._connection.execute(
            """INSERT INTO financial_sync_records (external_id, payload, last_updated)
               VALUES (?, ?, ?)
               ON CONFLICT(external_id) DO UPDATE SET
               payload=excluded.payload, last_updated=excluded.last_updated""",
            (external_id, json.dumps(payload, default=str), datetime.now().isoformat()),
        )
        await self._connection.commit()

    async def get_sync_record(self, external_id: str) -> dict | None:
        """Get the stored raw payload for an external transaction."""
        cursor = await self._connection.execute(
            "SELECT payload FROM financial_sync_records WHERE external_id = ?", (external_id,)
        )
        row = await cursor.fetchone()
        return json.loads(row["payload"]) if row else None

    # Sync status operations

    async def get_sync_status(self, sync_type: str) -> SyncStatus | None:
        """Get the status row of a sync type."""
        cursor = await self._connection.execute(
            "SELECT * FROM sync_status WHERE sync_type = ?", (sync_type,)
        )
        row = await cursor.fetchone()
        return self._row_to_sync_status(row) if row else None

    async def try_acquire_sync(self, sync_type: str, stale_before: datetime) -> bool:
        """Atomically flip a sync type to running.

        Succeeds when the row is not running, or when its last update is
        older than stale_before (an abandoned run). Returns False when
        another run holds it.
        """
        now = datetime.now().isoformat()
        await self._connection.execute(
            """INSERT INTO sync_status (sync_type, status, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(sync_type) DO NOTHING""",
            (sync_type, SyncState.IDLE.value, now),
        )
        cursor = await self._connection.execute(
            """UPDATE sync_status SET status=?, stop_requested=0, error_message=NULL,
               started_at=?, updated_at=?, completed_at=NULL
               WHERE sync_type=? AND (status != ? OR updated_at IS NULL OR updated_at < ?)""",
            (
                SyncState.RUNNING.value,
                now,
                now,
                sync_type,
                SyncState.RUNNING.value,
                stale_before.isoformat(),
            ),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def save_sync_status(self, status: SyncStatus) -> SyncStatus:
        """Write the progress fields of a sync status row."""
        status.updated_at = datetime.now()
        await self._connection.execute(
            """INSERT INTO sync_status (sync_type, status, last_offset, total_processed,
               total_created, total_updated, total_skipped, total_errors, window_start,
               window_end, force_update, error_message, started_at, updated_at, completed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(sync_type) DO UPDATE SET
               status=excluded.status, last_offset=excluded.last_offset,
               total_processed=excluded.total_processed,
               total_created=excluded.total_created,
               total_updated=excluded.total_updated,
               total_skipped=excluded.total_skipped,
               total_errors=excluded.total_errors,
               window_start=excluded.window_start, window_end=excluded.window_end,
               force_update=excluded.force_update, error_message=excluded.error_message,
               started_at=excluded.started_at, updated_at=excluded.updated_at,
               completed_at=excluded.completed_at""",
            (
                status.sync_type,
                status.status.value,
                status.last_offset,
                status.total_processed,
                status.total_created,
                status.total_updated,
                status.total_skipped,
                status.total_errors,
                _iso(status.window_start),
                _iso(status.window_end),
                int(status.force_update),
                status.error_message,
                _iso(status.started_at),
                _iso(status.updated_at),
                _iso(status.completed_at),
            ),
        )
        await self._connection.commit()
        return status

    async def request_sync_stop(self, sync_type: str) -> bool:
        """Ask a running sync to stop at its next page boundary."""
        cursor = await self._connection.execute(
            "UPDATE sync_status SET stop_requested = 1 WHERE sync_type = ? AND status = ?",
            (sync_type, SyncState.RUNNING.value),
        )
        await self._connection.commit()
        return cursor.rowcount == 1

    async def is_sync_stop_requested(self, sync_type: str) -> bool:
        """Check whether a stop was requested for a sync type."""
        cursor = await self._connection.execute(
            "SELECT stop_requested FROM sync_status WHERE sync_type = ?", (sync_type,)
        )
        row = await cursor.fetchone()
        return bool(row["stop_requested"]) if row else False

    def _row_to_sync_status(self, row: aiosqlite.Row) -> SyncStatus:
        """Convert database row to SyncStatus object."""
        return SyncStatus(
            sync_type=row["sync_type"],
            status=SyncState(row["status"]),
            last_offset=row["last_offset"],
            total_processed=row["total_processed"],
            total_created=row["total_created"],
            total_updated=row["total_updated"],
            total_skipped=row["total_skipped"],
            total_errors=row["total_errors"],
            window_start=_parse_date(row["window_start"]),
            window_end=_parse_date(row["window_end"]),
            force_update=bool(row["force_update"]),
            stop_requested=bool(row["stop_requested"]),
            error_message=row["error_message"],
            started_at=_parse_datetime(row["started_at"]),
            updated_at=_parse_datetime(row["updated_at"]),
            completed_at=_parse_datetime(row["completed_at"]),
        )

    # Audit log operations

    async def add_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an audit log entry."""
        cursor = await self._connection.execute(
            """INSERT INTO audit_log (table_name, action, description, user_id,
               payload, created_at) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                entry.table_name,
                entry.action,
                entry.description,
                entry.user_id,
                json.dumps(entry.payload, default=str),
                entry.created_at.isoformat(),
            ),
        )
        await self._connection.commit()
        entry.id = cursor.lastrowid
        return entry

    async def get_audit_log(self, action: str | None = None) -> list[AuditLogEntry]:
        """Get audit log entries, newest first, optionally for one action."""
        if action is None:
            cursor = await self._connection.execute("SELECT * FROM audit_log ORDER BY id DESC")
        else:
            cursor = await self._connection.execute(
                "SELECT * FROM audit_log WHERE action = ? ORDER BY id DESC", (action,)
            )
        rows = await cursor.fetchall()
        return [
            AuditLogEntry(
                id=row["id"],
                table_name=row["table_name"],
                action=row["action"],
                description=row["description"],
                user_id=row["user_id"],
                payload=json.loads(row["payload"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    # Webhook event operations

    async def save_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        """Append a raw webhook event."""
        cursor = await self._connection.execute(
            """INSERT INTO webhook_events (event_type, phone, message_id, zaap_id, is_group,
               chat_name, sender_name, is_from_me, status, message_type, message_text,
               media_url, media_mime_type, raw_payload, received_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.event_type,
                event.phone,
                event.message_id,
                event.zaap_id,
                int(event.is_group),
                event.chat_name,
                event.sender_name,
                int(event.is_from_me),
                event.status,
                event.message_type,
                event.message_text,
                event.media_url,
                event.media_mime_type,
                json.dumps(event.raw_payload, default=str),
                event.received_at.isoformat(),
            ),
        )
        await self._connection.commit()
        event.id = cursor.lastrowid
        return event

    async def get_webhook_events(self, event_type: str | None = None) -> list[WebhookEvent]:
        """Get stored webhook events in arrival order."""
        if event_type is None:
            cursor = await self._connection.execute("SELECT * FROM webhook_events ORDER BY id")
        else:
            cursor = await self._connection.execute(
                "SELECT * FROM webhook_events WHERE event_type = ? ORDER BY id", (event_type,)
            )
        rows = await cursor.fetchall()
        return [self._row_to_webhook_event(row) for row in rows]

    def _row_to_webhook_event(self, row: aiosqlite.Row) -> WebhookEvent:
        """Convert database row to WebhookEvent object."""
        return WebhookEvent(
            id=row["id"],
            event_type=row["event_type"],
            raw_payload=json.loads(row["raw_payload"]),
            phone=row["phone"],
            message_id=row["message_id"],
            zaap_id=row["zaap_id"],
            is_group=bool(row["is_group"]),
            chat_name=row["chat_name"],
            sender_name=row["sender_name"],
            is_from_me=bool(row["is_from_me"]),
            status=row["status"],
            message_type=row["message_type"],
            message_text=row["message_text"],
            media_url=row["media_url"],
            media_mime_type=row["media_mime_type"],
            received_at=datetime.fromisoformat(row["received_at"]),
        )

    # Conversation operations

    async def upsert_conversation(
        self,
        phone: str,
        name: str | None,
        last_message: str | None,
        last_message_at: datetime,
        is_group: bool = False,
        increment_unread: bool = False,
    ) -> Conversation:
        """Create or refresh the conversation summary for a phone number."""
        await self._connection.execute(
            """INSERT INTO conversations (phone, name, last_message, last_message_at,
               unread_count, is_group) VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(phone) DO UPDATE SET
               name=COALESCE(excluded.name, conversations.name),
               last_message=excluded.last_message,
               last_message_at=excluded.last_message_at,
               unread_count=conversations.unread_count + excluded.unread_count,
               is_group=excluded.is_group""",
            (
                phone,
                name,
                last_message,
                last_message_at.isoformat(),
                1 if increment_unread else 0,
                int(is_group),
            ),
        )
        await self._connection.commit()
        return await self.get_conversation_by_phone(phone)

    async def get_or_create_conversation(
        self, phone: str, name: str | None, is_group: bool = False
    ) -> Conversation:
        """Get the conversation of a phone number, creating it empty if missing."""
        await self._connection.execute(
            """INSERT INTO conversations (phone, name, is_group) VALUES (?, ?, ?)
               ON CONFLICT(phone) DO NOTHING""",
            (phone, name, int(is_group)),
        )
        await self._connection.commit()
        return await self.get_conversation_by_phone(phone)

    async def get_conversation_by_phone(self, phone: str) -> Conversation | None:
        """Get conversation by phone number."""
        cursor = await self._connection.execute(
            "SELECT * FROM conversations WHERE phone = ?", (phone,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            phone=row["phone"],
            name=row["name"],
            last_message=row["last_message"],
            last_message_at=_parse_datetime(row["last_message_at"]),
            unread_count=row["unread_count"],
            is_group=bool(row["is_group"]),
        )

    # Message operations

    async def save_message(self, message: Message) -> Message | None:
        """Append a message to a conversation.

        Returns None, writing nothing, when a message with the same gateway
        message_id is already stored.
        """
        cursor = await self._connection.execute(
            """INSERT INTO messages (conversation_id, message_id, direction, message_type,
               text, media_url, media_mime_type, status, sent_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(message_id) DO NOTHING""",
            (
                message.conversation_id,
                message.message_id,
                message.direction.value,
                message.message_type,
                message.text,
                message.media_url,
                message.media_mime_type,
                message.status,
                message.sent_at.isoformat(),
            ),
        )
        await self._connection.commit()
        if cursor.rowcount == 0:
            return None
        message.id = cursor.lastrowid
        return message

    async def get_message_by_message_id(self, message_id: str) -> Message | None:
        """Get message by gateway message ID."""
        cursor = await self._connection.execute(
            "SELECT * FROM messages WHERE message_id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def get_messages_for_conversation(self, conversation_id: int) -> list[Message]:
        """Get all messages of a conversation in arrival order."""
        cursor = await self._connection.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id", (conversation_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def update_message_status(self, message_id: str, status: str) -> None:
        """Set the delivery status of a message."""
        await self._connection.execute(
            "UPDATE messages SET status = ? WHERE message_id = ?", (status, message_id)
        )
        await self._connection.commit()

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        """Convert database row to Message object."""
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            direction=MessageDirection(row["direction"]),
            message_type=row["message_type"],
            text=row["text"],
            media_url=row["media_url"],
            media_mime_type=row["media_mime_type"],
            status=row["status"],
            sent_at=datetime.fromisoformat(row["sent_at"]),
        )
