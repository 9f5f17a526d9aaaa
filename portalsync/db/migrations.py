"""Database schema migrations."""

SCHEMA_VERSION = 2

MIGRATIONS = {
    1: """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS user_permissions (
            user_id TEXT NOT NULL,
            feature TEXT NOT NULL,
            level TEXT NOT NULL DEFAULT 'none',
            PRIMARY KEY (user_id, feature)
        );

        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            kind TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE INDEX IF NOT EXISTS idx_categories_kind_active
            ON categories(kind, is_active);

        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1
        );

        CREATE TABLE IF NOT EXISTS ledger_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT UNIQUE,
            kind TEXT NOT NULL,
            amount TEXT NOT NULL,
            description TEXT NOT NULL,
            category_id INTEGER REFERENCES categories(id),
            account_id INTEGER REFERENCES accounts(id),
            scheduled_date TEXT NOT NULL,
            due_date TEXT,
            paid_date TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT,
            origin TEXT NOT NULL,
            created_by TEXT,
            updated_by TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_ledger_entries_scheduled_date
            ON ledger_entries(scheduled_date);

        CREATE TABLE IF NOT EXISTS financial_sync_records (
            external_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            last_updated TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_status (
            sync_type TEXT PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'idle',
            last_offset INTEGER NOT NULL DEFAULT 0,
            total_processed INTEGER NOT NULL DEFAULT 0,
            total_created INTEGER NOT NULL DEFAULT 0,
            total_updated INTEGER NOT NULL DEFAULT 0,
            total_skipped INTEGER NOT NULL DEFAULT 0,
            total_errors INTEGER NOT NULL DEFAULT 0,
            window_start TEXT,
            window_end TEXT,
            force_update INTEGER NOT NULL DEFAULT 0,
            stop_requested INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            started_at TEXT,
            updated_at TEXT,
            completed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            table_name TEXT NOT NULL,
            action TEXT NOT NULL,
            description TEXT NOT NULL,
            user_id TEXT,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        INSERT INTO schema_version (version) VALUES (1);
    """,
    2: """
        CREATE TABLE IF NOT EXISTS webhook_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type TEXT NOT NULL,
            phone TEXT,
            message_id TEXT,
            zaap_id TEXT,
            is_group INTEGER NOT NULL DEFAULT 0,
            chat_name TEXT,
            sender_name TEXT,
            is_from_me INTEGER NOT NULL DEFAULT 0,
            status TEXT,
            message_type TEXT,
            message_text TEXT,
            media_url TEXT,
            media_mime_type TEXT,
            raw_payload TEXT NOT NULL,
            received_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_webhook_events_type
            ON webhook_events(event_type);

        CREATE TABLE IF NOT EXISTS conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            phone TEXT NOT NULL UNIQUE,
            name TEXT,
            last_message TEXT,
            last_message_at TEXT,
            unread_count INTEGER NOT NULL DEFAULT 0,
            is_group INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            message_id TEXT UNIQUE,
            direction TEXT NOT NULL,
            message_type TEXT,
            text TEXT,
            media_url TEXT,
            media_mime_type TEXT,
            status TEXT,
            sent_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(conversation_id);

        UPDATE schema_version SET version = 2;
    """,
}


def get_migration_sql(from_version: int, to_version: int) -> list[str]:
    """Get list of migration SQL statements to run."""
    statements = []
    for version in range(from_version + 1, to_version + 1):
        if version in MIGRATIONS:
            statements.append(MIGRATIONS[version])
    return statements
