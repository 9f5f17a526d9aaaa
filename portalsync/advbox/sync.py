"""Synchronization of ADVBox financial transactions into the local ledger."""

import asyncio
import calendar
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta

import aiosqlite
from cryptography.fernet import InvalidToken

from portalsync.advbox import (
    AdvboxAPIError,
    AdvboxAuthError,
    AdvboxClient,
    AdvboxRateLimitError,
    AdvboxTransaction,
    TransactionPage,
    parse_transaction,
    resolve_external_id,
)
from portalsync.auth import TokenEncryption
from portalsync.config import AdvboxConfig
from portalsync.db.models import (
    Account,
    AuditLogEntry,
    Category,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    SyncState,
    SyncStatus,
)
from portalsync.db.repository import Repository

log = logging.getLogger("portalsync.sync")

SYNC_TYPE = "financial"
AUDIT_ACTION = "sync_advbox"
ERROR_SAMPLE_SIZE = 5


class SyncConfigurationError(Exception):
    """The sync cannot start because its configuration is incomplete."""


class SyncAlreadyRunningError(Exception):
    """Another run of the same sync type holds the status row."""


def resolve_api_token(config: AdvboxConfig, encryption: TokenEncryption) -> str:
    """Return the usable ADVBox token, decrypting it when stored encrypted."""
    if not config.api_token:
        raise SyncConfigurationError("ADVBox API token is not configured")
    try:
        return encryption.decrypt(config.api_token)
    except InvalidToken as e:
        raise SyncConfigurationError("ADVBox API token cannot be decrypted") from e


def compute_window(today: date, months: int) -> tuple[date, date]:
    """Trailing window of whole calendar months ending today."""
    month_index = today.year * 12 + (today.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(today.day, calendar.monthrange(year, month)[1])
    return date(year, month, day), today


@dataclass
class SyncSummary:
    """Outcome of one sync invocation."""

    window_start: date
    window_end: date
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    batches_processed: int = 0
    partial: bool = False
    throttled: bool = False
    cancelled: bool = False
    resumed_from_offset: int = 0
    next_offset: int = 0
    message: str = ""

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict:
        """Serialize for the HTTP response."""
        return {
            "success": True,
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errorCount": self.error_count,
            "errorSamples": self.errors[:ERROR_SAMPLE_SIZE],
            "windowStart": self.window_start.isoformat(),
            "windowEnd": self.window_end.isoformat(),
            "batchesProcessed": self.batches_processed,
            "partial": self.partial,
            "throttled": self.throttled,
            "cancelled": self.cancelled,
            "resumedFromOffset": self.resumed_from_offset,
            "nextOffset": self.next_offset,
            "message": self.message,
        }


class LedgerMapper:
    """Maps validated ADVBox transactions onto local ledger entries.

    Categories are matched by case-insensitive name within the entry kind,
    falling back to the first active category of that kind. Accounts are
    matched by the transaction's bank account name, falling back to the
    first active account.
    """

    def __init__(self, categories: list[Category], accounts: list[Account], user_id: str):
        self._user_id = user_id
        self._categories_by_name: dict[EntryKind, dict[str, int]] = {k: {} for k in EntryKind}
        self._default_category: dict[EntryKind, int | None] = {k: None for k in EntryKind}
        for category in categories:
            if not category.is_active:
                continue
            self._categories_by_name[category.kind].setdefault(
                category.name.strip().lower(), category.id
            )
            if self._default_category[category.kind] is None:
                self._default_category[category.kind] = category.id
        active_accounts = [a for a in accounts if a.is_active]
        self._accounts_by_name = {}
        for account in active_accounts:
            self._accounts_by_name.setdefault(account.name.strip().lower(), account.id)
        self._default_account_id = active_accounts[0].id if active_accounts else None

    def resolve_category(self, name: str | None, kind: EntryKind) -> int | None:
        """Resolve a category id for an upstream category name."""
        if name:
            matched = self._categories_by_name[kind].get(name.strip().lower())
            if matched is not None:
                return matched
        return self._default_category[kind]

    def resolve_account(self, bank_account: str | None) -> int | None:
        """Resolve an account id for an upstream bank account name."""
        if bank_account:
            matched = self._accounts_by_name.get(bank_account.strip().lower())
            if matched is not None:
                return matched
        return self._default_account_id

    def to_entry(self, txn: AdvboxTransaction, now: datetime) -> LedgerEntry:
        """Build the ledger entry for a transaction."""
        kind = EntryKind.INCOME if txn.amount >= 0 else EntryKind.EXPENSE
        return LedgerEntry(
            id=None,
            external_id=txn.id,
            kind=kind,
            amount=abs(txn.amount),
            description=(
                txn.name or txn.description or txn.identification or f"ADVBox #{txn.id}"
            ),
            category_id=self.resolve_category(txn.category, kind),
            account_id=self.resolve_account(txn.bank_account),
            scheduled_date=txn.date_due or now.date(),
            due_date=txn.date_due,
            paid_date=txn.date_payment,
            status=EntryStatus.PAID if txn.is_paid else EntryStatus.PENDING,
            notes=build_notes(txn, now),
            origin="advbox",
            created_by=self._user_id,
            updated_by=self._user_id,
            created_at=now,
            updated_at=now,
        )


def build_notes(txn: AdvboxTransaction, now: datetime) -> str:
    """Compose the free-text notes stored with an imported entry."""
    lines = []
    if txn.customer_name:
        lines.append(f"Customer: {txn.customer_name}")
    if txn.lawsuit_title:
        lines.append(f"Case: {txn.lawsuit_title}")
    if txn.notes:
        lines.append(f"Notes: {txn.notes}")
    lines.append(f"Imported from ADVBox on {now.strftime('%d/%m/%Y %H:%M:%S')}")
    return "\n".join(lines)


class FinancialSync:
    """One invocation of the ADVBox financial sync.

    Pages are fetched sequentially and each record is applied on its own,
    so a failing record or page never aborts the run. The run ends early,
    as a partial result, when the time budget is spent or ADVBox keeps
    throttling; the next invocation with the same window resumes from the
    persisted offset.
    """

    def __init__(
        self,
        client: AdvboxClient,
        repo: Repository,
        config: AdvboxConfig,
        user_id: str,
        *,
        clock=time.monotonic,
        sleep=asyncio.sleep,
        today: date | None = None,
    ):
        self._client = client
        self._repo = repo
        self._config = config
        self._user_id = user_id
        self._clock = clock
        self._sleep = sleep
        self._today = today
        self._started = 0.0
        self._mapper: LedgerMapper | None = None
        self._window: tuple[date, date] | None = None

    def _elapsed(self) -> float:
        return self._clock() - self._started

    async def run(self, months: int = 12, force_update: bool = False) -> SyncSummary:
        """Run the sync over the trailing window of `months` months."""
        self._started = self._clock()
        window_start, window_end = compute_window(self._today or date.today(), months)
        self._window = (window_start, window_end)
        previous = await self._repo.get_sync_status(SYNC_TYPE)
        stale_before = datetime.now() - timedelta(seconds=self._config.lock_timeout)
        if not await self._repo.try_acquire_sync(SYNC_TYPE, stale_before):
            raise SyncAlreadyRunningError("A financial sync is already running")

        status = self._initial_status(previous, window_start, window_end, force_update)
        await self._repo.save_sync_status(status)
        summary = SyncSummary(
            window_start=window_start,
            window_end=window_end,
            resumed_from_offset=status.last_offset,
            next_offset=status.last_offset,
        )
        log.info(
            f"Syncing ADVBox transactions from {window_start} to {window_end} "
            f"(offset {status.last_offset}, force_update={force_update})"
        )

        try:
            categories = await self._repo.get_active_categories()
            accounts = await self._repo.get_active_accounts()
            self._mapper = LedgerMapper(categories, accounts, self._user_id)
            await self._sync_pages(status, summary, force_update)
        except Exception as e:
            log.error(f"Financial sync failed: {e}")
            status.status = SyncState.ERROR
            status.error_message = str(e)
            status.completed_at = datetime.now()
            await self._repo.save_sync_status(status)
            raise

        self._finish(status, summary)
        await self._repo.save_sync_status(status)
        await self._write_audit_log(summary)
        log.info(summary.message)
        return summary

    def _initial_status(
        self,
        previous: SyncStatus | None,
        window_start: date,
        window_end: date,
        force_update: bool,
    ) -> SyncStatus:
        """Resume a partial run over the same window, or start from offset 0."""
        now = datetime.now()
        if (
            previous is not None
            and previous.status == SyncState.PARTIAL
            and previous.window_start == window_start
            and previous.window_end == window_end
            and previous.force_update == force_update
        ):
            log.info(f"Resuming partial financial sync at offset {previous.last_offset}")
            return replace(
                previous,
                status=SyncState.RUNNING,
                stop_requested=False,
                error_message=None,
                started_at=now,
                completed_at=None,
            )
        return SyncStatus(
            sync_type=SYNC_TYPE,
            status=SyncState.RUNNING,
            window_start=window_start,
            window_end=window_end,
            force_update=force_update,
            started_at=now,
        )

    async def _sync_pages(
        self, status: SyncStatus, summary: SyncSummary, force_update: bool
    ) -> None:
        """Fetch and apply pages until a stop condition is met."""
        base = replace(status)
        offset = status.last_offset
        page_size = self._config.page_size
        iterations = 0
        consecutive_failures = 0
        first_failed_offset = offset

        while True:
            if iterations >= self._config.max_iterations:
                log.warning(f"Reached {iterations} pages, stopping at offset {offset}")
                summary.partial = True
                break
            if iterations > 0:
                await self._sleep(self._config.page_delay)
            if await self._repo.is_sync_stop_requested(SYNC_TYPE):
                log.info(f"Stop requested, ending sync at offset {offset}")
                summary.cancelled = True
                break
            if self._elapsed() >= self._config.time_budget:
                log.warning(f"Time budget spent after {summary.batches_processed} pages")
                summary.partial = True
                break

            iterations += 1
            try:
                page = await self._fetch_page(offset)
            except AdvboxAuthError:
                raise
            except AdvboxRateLimitError as e:
                log.warning(f"Giving up on offset {offset}: {e}")
                summary.partial = True
                summary.throttled = True
                break
            except AdvboxAPIError as e:
                log.error(f"Page at offset {offset} failed: {e}")
                summary.errors.append(f"Page at offset {offset}: {e}")
                if consecutive_failures == 0:
                    first_failed_offset = offset
                consecutive_failures += 1
                if consecutive_failures >= self._config.max_consecutive_page_errors:
                    # Resume from the first failed page of the streak.
                    log.error(
                        f"{consecutive_failures} consecutive page failures, "
                        f"stopping at offset {first_failed_offset}"
                    )
                    offset = first_failed_offset
                    summary.partial = True
                    self._update_progress(status, base, summary, offset)
                    break
                offset += page_size
                self._update_progress(status, base, summary, offset)
                await self._repo.save_sync_status(status)
                continue

            consecutive_failures = 0
            summary.batches_processed += 1
            if not page.records:
                break
            await self._apply_page(page, summary, force_update)
            offset += len(page.records)
            self._update_progress(status, base, summary, offset)
            await self._repo.save_sync_status(status)
            log.info(
                f"Page {summary.batches_processed}: {summary.total} processed, "
                f"{summary.created} created, {summary.updated} updated, "
                f"{summary.skipped} skipped"
            )
            if not page.has_more:
                break

        summary.next_offset = offset
        status.last_offset = offset

    async def _fetch_page(self, offset: int) -> TransactionPage:
        """Fetch a page, backing off exponentially while ADVBox throttles."""
        start_date, end_date = self._window
        attempt = 0
        while True:
            try:
                return await self._client.fetch_transactions_page(
                    start_date, end_date, offset=offset, limit=self._config.page_size
                )
            except AdvboxRateLimitError as e:
                if attempt >= self._config.max_rate_limit_retries:
                    raise
                delay = e.retry_after or self._config.rate_limit_delay * 2**attempt
                if self._elapsed() + delay >= self._config.time_budget:
                    raise
                attempt += 1
                log.warning(
                    f"Rate limited at offset {offset}, retry {attempt} in {delay:.1f}s"
                )
                await self._sleep(delay)

    async def _apply_page(
        self, page: TransactionPage, summary: SyncSummary, force_update: bool
    ) -> None:
        """Apply every record of a page, one write at a time."""
        for record in page.records:
            summary.total += 1
            external_id = resolve_external_id(record)
            if external_id is None:
                log.debug(f"Skipping record without identifier: {record!r}")
                summary.skipped += 1
                continue
            try:
                outcome = await self._apply_record(external_id, record, force_update)
            except Exception as e:
                log.error(f"Failed to process transaction {external_id}: {e}")
                summary.errors.append(f"ID {external_id}: {e}")
                continue
            if outcome == "created":
                summary.created += 1
            elif outcome == "updated":
                summary.updated += 1
            else:
                summary.skipped += 1

    async def _apply_record(self, external_id: str, record: dict, force_update: bool) -> str:
        """Create or update the entry of one record; returns the outcome."""
        existing = await self._repo.get_ledger_entry_by_external_id(external_id)
        if existing is not None and not force_update:
            return "skipped"

        txn = parse_transaction(record)
        entry = self._mapper.to_entry(txn, datetime.now())
        if existing is None:
            try:
                await self._repo.insert_ledger_entry(entry)
                outcome = "created"
            except aiosqlite.IntegrityError:
                # Inserted concurrently by another run.
                if not force_update:
                    return "skipped"
                await self._repo.update_ledger_entry_by_external_id(entry)
                outcome = "updated"
        else:
            await self._repo.update_ledger_entry_by_external_id(entry)
            outcome = "updated"
        await self._repo.save_sync_record(external_id, record)
        return outcome

    def _update_progress(
        self, status: SyncStatus, base: SyncStatus, summary: SyncSummary, offset: int
    ) -> None:
        status.last_offset = offset
        status.total_processed = base.total_processed + summary.total
        status.total_created = base.total_created + summary.created
        status.total_updated = base.total_updated + summary.updated
        status.total_skipped = base.total_skipped + summary.skipped
        status.total_errors = base.total_errors + summary.error_count

    def _finish(self, status: SyncStatus, summary: SyncSummary) -> None:
        """Set the terminal status and the summary message."""
        status.completed_at = datetime.now()
        if summary.cancelled:
            status.status = SyncState.IDLE
            summary.message = (
                f"Sync stopped on request after {summary.batches_processed} pages "
                f"at offset {summary.next_offset}"
            )
        elif summary.throttled:
            status.status = SyncState.PARTIAL
            summary.message = (
                "ADVBox is rate limiting requests; run the sync again later to "
                f"continue from offset {summary.next_offset}"
            )
        elif summary.partial:
            status.status = SyncState.PARTIAL
            summary.message = (
                f"Partial sync: {summary.batches_processed} pages processed before "
                f"stopping early; run the sync again to continue from offset "
                f"{summary.next_offset}"
            )
        else:
            status.status = SyncState.COMPLETED
            summary.message = (
                f"Sync finished: {summary.created} created, {summary.updated} updated, "
                f"{summary.skipped} skipped, {summary.error_count} errors"
            )

    async def _write_audit_log(self, summary: SyncSummary) -> None:
        await self._repo.add_audit_log(
            AuditLogEntry(
                id=None,
                table_name="ledger_entries",
                action=AUDIT_ACTION,
                description=(
                    f"ADVBox sync: {summary.created} created, {summary.updated} updated, "
                    f"{summary.skipped} skipped"
                ),
                user_id=self._user_id,
                payload={
                    "total": summary.total,
                    "created": summary.created,
                    "updated": summary.updated,
                    "skipped": summary.skipped,
                    "errors": summary.error_count,
                    "partial": summary.partial,
                    "throttled": summary.throttled,
                    "cancelled": summary.cancelled,
                    "batches": summary.batches_processed,
                    "period": {
                        "start": summary.window_start.isoformat(),
                        "end": summary.window_end.isoformat(),
                    },
                },
            )
        )
