from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from decimal import Decimal
from dataclasses import replace
import asyncio
import itertools
from collections import defaultdict

from exceptions import AccountNotFoundError, ConflictError, InvalidAmountError
from models import Account, JournalEntry, User


class AccountRepository(ABC):
    @abstractmethod
    async def find_by_account_number(self, account_number: str) -> Optional[Account]:
        """Get account by number. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def save(self, account: Account) -> Account:
        """Compare-and-update the account.

        Succeeds only if the stored version still equals ``account.version``
        and returns the stored record with the next version. Raises
        ConflictError otherwise.
        """
        pass

    @abstractmethod
    async def create(self, account_number: str, balance: Decimal = Decimal("0.00")) -> Account:
        """Create a new account."""
        pass

    @abstractmethod
    def get_lock(self, account_number: str) -> Optional[asyncio.Lock]:
        """Get lock for specific account. Returns None if account doesn't exist."""
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass


class JournalRepository(ABC):
    @abstractmethod
    async def append(self, entry: JournalEntry) -> JournalEntry:
        """Store a new journal entry and return it with its assigned id."""
        pass

    @abstractmethod
    async def list_by_account(self, account_number: str) -> List[JournalEntry]:
        """Get entries for an account, newest first."""
        pass

    @abstractmethod
    async def get_entries_count(self) -> int:
        """Get total number of journal entries."""
        pass


class UserRepository(ABC):
    @abstractmethod
    async def get_by_username(self, username: str) -> Optional[User]:
        pass

    @abstractmethod
    async def add(self, user: User) -> User:
        pass

    @abstractmethod
    async def get_users_count(self) -> int:
        pass


DEFAULT_ACCOUNTS = {
    "acc_001": Decimal("1000.00"),
    "acc_002": Decimal("500.00"),
    "acc_003": Decimal("0.00"),
}


class InMemoryAccountRepository(AccountRepository):
    def __init__(self, initial: Optional[Dict[str, Decimal]] = None):
        seed = DEFAULT_ACCOUNTS if initial is None else initial
        self.accounts: Dict[str, Account] = {
            number: Account(account_number=number, balance=balance)
            for number, balance in seed.items()
        }
        self.locks: Dict[str, asyncio.Lock] = {number: asyncio.Lock() for number in self.accounts}

    async def find_by_account_number(self, account_number: str) -> Optional[Account]:
        return self.accounts.get(account_number)

    async def save(self, account: Account) -> Account:
        current = self.accounts.get(account.account_number)
        if current is None:
            raise AccountNotFoundError(account.account_number)
        if current.version != account.version:
            raise ConflictError(
                f"Account {account.account_number} changed: "
                f"expected version {account.version}, found {current.version}"
            )
        if account.balance < 0:
            raise InvalidAmountError("Balance cannot become negative")
        stored = replace(account, version=account.version + 1)
        self.accounts[account.account_number] = stored
        return stored

    async def create(self, account_number: str, balance: Decimal = Decimal("0.00")) -> Account:
        if account_number in self.accounts:
            raise ValueError(f"Account {account_number} already exists")
        if balance < 0:
            raise InvalidAmountError("Initial balance cannot be negative")
        account = Account(account_number=account_number, balance=balance)
        self.accounts[account_number] = account
        self.locks[account_number] = asyncio.Lock()
        return account

    def get_lock(self, account_number: str) -> Optional[asyncio.Lock]:
        return self.locks.get(account_number)

    async def get_accounts_count(self) -> int:
        return len(self.accounts)


class InMemoryJournalRepository(JournalRepository):
    def __init__(self):
        self.entries: Dict[str, List[JournalEntry]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._count = 0

    async def append(self, entry: JournalEntry) -> JournalEntry:
        stored = replace(entry, id=next(self._ids))
        self.entries[stored.account_number].append(stored)
        self._count += 1
        return stored

    async def list_by_account(self, account_number: str) -> List[JournalEntry]:
        # Ties on timestamp fall back to id so commit order is preserved.
        return sorted(
            self.entries.get(account_number, ()),
            key=lambda e: (e.timestamp, e.id),
            reverse=True,
        )

    async def get_entries_count(self) -> int:
        return self._count


class InMemoryUserRepository(UserRepository):
    def __init__(self):
        self.users: Dict[str, User] = {}
        self._ids = itertools.count(1)

    async def get_by_username(self, username: str) -> Optional[User]:
        return self.users.get(username.lower())

    async def add(self, user: User) -> User:
        stored = replace(user, id=next(self._ids))
        self.users[user.username.lower()] = stored
        return stored

    async def get_users_count(self) -> int:
        return len(self.users)


# Singleton instances shared by all requests
_account_repo = InMemoryAccountRepository()
_journal_repo = InMemoryJournalRepository()
_user_repo = InMemoryUserRepository()


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_journal_repository() -> JournalRepository:
    return _journal_repo


def get_user_repository() -> UserRepository:
    return _user_repo


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _account_repo, _journal_repo, _user_repo
    _account_repo = InMemoryAccountRepository()
    _journal_repo = InMemoryJournalRepository()
    _user_repo = InMemoryUserRepository()
