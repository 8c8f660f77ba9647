import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Context, Decimal, DecimalException, Inexact, InvalidOperation, Overflow
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo
import structlog

from config import get_settings
from exceptions import (
    AccountNotFoundError,
    BankingError,
    BusyError,
    ConflictError,
    InsufficientFundsError,
    InvalidAmountError,
    StorageFailureError,
)
from models import Account, JournalEntry, TransactionResult, TransactionType
from repositories import AccountRepository, JournalRepository

logger = structlog.get_logger()

Clock = Callable[[], datetime]

# Balance arithmetic must stay exact; anything that would round is rejected.
MONEY_CONTEXT = Context(prec=38, traps=[Inexact, InvalidOperation, Overflow])


def parse_amount(amount) -> Decimal:
    """Coerce a transaction amount to a positive, finite Decimal."""
    if amount is None:
        raise InvalidAmountError("Amount is required")
    if isinstance(amount, bool):
        raise InvalidAmountError(f"Invalid amount: {amount!r}")
    if isinstance(amount, float):
        amount = str(amount)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidAmountError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise InvalidAmountError(f"Invalid amount: {amount!r}")
    if value <= 0:
        raise InvalidAmountError("Amount must be greater than zero")
    return value


class TransactionService:
    def __init__(
        self,
        account_repo: AccountRepository,
        journal_repo: JournalRepository,
        clock: Optional[Clock] = None,
        lock_timeout: Optional[float] = None,
        max_conflict_retries: Optional[int] = None,
    ):
        settings = get_settings()
        self.account_repo = account_repo
        self.journal_repo = journal_repo
        self.clock = clock or (lambda: datetime.now(ZoneInfo(settings.timezone)))
        self.lock_timeout = settings.lock_timeout_seconds if lock_timeout is None else lock_timeout
        self.max_conflict_retries = (
            settings.max_conflict_retries if max_conflict_retries is None else max_conflict_retries
        )

    async def credit(self, account_number: str, amount) -> TransactionResult:
        """Add ``amount`` to the account and journal a CREDIT entry."""
        return await self._process(account_number, parse_amount(amount), TransactionType.CREDIT)

    async def debit(self, account_number: str, amount) -> TransactionResult:
        """Subtract ``amount`` from the account and journal a DEBIT entry.

        Fails with InsufficientFundsError, leaving the account untouched,
        when the balance is lower than the amount.
        """
        return await self._process(account_number, parse_amount(amount), TransactionType.DEBIT)

    async def get_account(self, account_number: str) -> Account:
        async with self._account_lock(account_number):
            return await self._load(account_number)

    async def list_journal(self, account_number: str) -> List[JournalEntry]:
        async with self._account_lock(account_number):
            await self._load(account_number)
            return await self._call_store(self.journal_repo.list_by_account(account_number))

    async def _process(
        self,
        account_number: str,
        amount: Decimal,
        transaction_type: TransactionType,
    ) -> TransactionResult:
        async with self._account_lock(account_number):
            attempt = 0
            while True:
                account = await self._load(account_number)
                updated = self._apply(account, amount, transaction_type)
                entry = JournalEntry(
                    account_number=account_number,
                    amount=amount,
                    type=transaction_type,
                    timestamp=self.clock(),
                )
                try:
                    result = await self._run_commit(account, updated, entry)
                except ConflictError:
                    attempt += 1
                    if attempt > self.max_conflict_retries:
                        raise
                    continue

                logger.debug(
                    "Transaction committed",
                    transaction_id=result.entry.id,
                    account_number=account_number,
                    type=transaction_type.value,
                    amount=str(amount),
                    old_balance=str(account.balance),
                    new_balance=str(result.balance),
                )
                return result

    @staticmethod
    def _apply(account: Account, amount: Decimal, transaction_type: TransactionType) -> Account:
        try:
            if transaction_type == TransactionType.DEBIT:
                if account.balance < amount:
                    raise InsufficientFundsError(account.account_number, account.balance, amount)
                new_balance = MONEY_CONTEXT.subtract(account.balance, amount)
            else:
                new_balance = MONEY_CONTEXT.add(account.balance, amount)
        except DecimalException as exc:
            raise InvalidAmountError(f"Amount {amount} cannot be applied exactly") from exc
        return replace(account, balance=new_balance)

    async def _run_commit(self, account: Account, updated: Account, entry: JournalEntry) -> TransactionResult:
        # Once started, a commit always runs to completion (applied or rolled
        # back) before the account lock is released, even if we are cancelled.
        commit = asyncio.ensure_future(self._commit(account, updated, entry))
        try:
            return await asyncio.shield(commit)
        except asyncio.CancelledError:
            await asyncio.wait([commit])
            if not commit.cancelled():
                commit.exception()
            raise

    async def _commit(self, original: Account, updated: Account, entry: JournalEntry) -> TransactionResult:
        saved = await self._call_store(self.account_repo.save(updated))
        try:
            stored = await self._call_store(self.journal_repo.append(entry))
        except BankingError as exc:
            await self._rollback(saved, original)
            raise StorageFailureError(
                f"Journal append failed for account {original.account_number}; balance restored"
            ) from exc
        return TransactionResult(entry=stored, balance=saved.balance)

    async def _rollback(self, saved: Account, original: Account) -> None:
        """Restore the pre-commit balance after a failed journal append.

        If this compare-and-update fails too, the account keeps the new
        balance with no journal entry. That state is reported as a
        StorageFailureError naming the account and needs manual repair.
        """
        try:
            await self._call_store(self.account_repo.save(replace(saved, balance=original.balance)))
        except BankingError as exc:
            raise StorageFailureError(
                f"Journal append failed and balance of account {original.account_number} could not be restored"
            ) from exc

    async def _load(self, account_number: str) -> Account:
        account = await self._call_store(self.account_repo.find_by_account_number(account_number))
        if account is None:
            raise AccountNotFoundError(account_number)
        return account

    @staticmethod
    async def _call_store(operation):
        try:
            return await operation
        except BankingError:
            raise
        except Exception as exc:
            raise StorageFailureError(str(exc) or exc.__class__.__name__) from exc

    @asynccontextmanager
    async def _account_lock(self, account_number: str):
        lock = self.account_repo.get_lock(account_number)
        if lock is None:
            raise AccountNotFoundError(account_number)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as exc:
            raise BusyError(f"Account {account_number} is busy, try again later") from exc
        try:
            yield
        finally:
            lock.release()


# Factory function for dependency injection
def get_transaction_service(
    account_repo: AccountRepository,
    journal_repo: JournalRepository
) -> TransactionService:
    return TransactionService(account_repo, journal_repo)
