from pydantic import BaseModel, Field, field_serializer, field_validator
from dataclasses import dataclass
from enum import Enum
from typing import List, Literal, Optional
from datetime import datetime
from decimal import Decimal
import re


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


# Domain records

@dataclass(frozen=True)
class Account:
    account_number: str
    balance: Decimal
    version: int = 0


@dataclass(frozen=True)
class JournalEntry:
    """Immutable audit record of one balance-affecting operation.

    ``id`` is assigned by the journal store on append; entries reference
    their account by number only.
    """
    account_number: str
    amount: Decimal
    type: TransactionType
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class TransactionResult:
    entry: JournalEntry
    balance: Decimal


@dataclass(frozen=True)
class User:
    username: str
    password_hash: str
    email: Optional[str]
    created_at: datetime
    id: Optional[int] = None


# Request / response schemas

class TransactionRequest(BaseModel):
    accountNumber: str = Field(
        ...,
        min_length=1,
        max_length=50,
        description="Account number"
    )
    amount: Optional[Decimal] = Field(
        None,
        description="Positive transaction amount, parsed exactly from the JSON literal"
    )

    @field_validator('accountNumber')
    @classmethod
    def validate_account_number(cls, v):
        if not re.match(r'^[A-Za-z0-9_-]+$', v):
            raise ValueError('Account number must contain only alphanumeric characters, underscores, and hyphens')
        return v


class TransactionResponse(BaseModel):
    transactionId: int = Field(..., description="Journal entry identifier")
    status: Literal["processed"] = Field("processed", description="Transaction status")
    message: str = Field(..., description="Human readable outcome")
    accountNumber: str
    type: TransactionType
    amount: Decimal = Field(..., description="Transaction amount")
    balance: Decimal = Field(..., description="Account balance after transaction")
    timestamp: datetime = Field(..., description="Transaction timestamp")

    @field_serializer('amount', 'balance')
    def serialize_money(self, v: Decimal) -> str:
        return format(v, "f")


class BalanceResponse(BaseModel):
    accountNumber: str
    balance: Decimal

    @field_serializer('balance')
    def serialize_money(self, v: Decimal) -> str:
        return format(v, "f")


class JournalEntryResponse(BaseModel):
    id: int
    accountNumber: str
    type: TransactionType
    amount: Decimal
    timestamp: datetime

    @field_serializer('amount')
    def serialize_money(self, v: Decimal) -> str:
        return format(v, "f")

    @classmethod
    def from_entry(cls, entry: JournalEntry) -> "JournalEntryResponse":
        return cls(
            id=entry.id,
            accountNumber=entry.account_number,
            type=entry.type,
            amount=entry.amount,
            timestamp=entry.timestamp,
        )


class JournalResponse(BaseModel):
    accountNumber: str
    entries: List[JournalEntryResponse]


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=72)
    email: Optional[str] = Field(None, max_length=254)

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        if not re.match(r'^[A-Za-z0-9_.-]+$', v):
            raise ValueError('Username must contain only alphanumeric characters, dots, underscores, and hyphens')
        return v

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        # bcrypt only looks at the first 72 bytes
        if len(v.encode('utf-8')) > 72:
            raise ValueError('Password must be at most 72 bytes')
        return v

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v is not None and not re.match(r'^[^@\s]+@[^@\s]+\.[^@\s]+$', v):
            raise ValueError('Invalid email address')
        return v


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class MessageResponse(BaseModel):
    message: str


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    journal_entries: int = Field(..., description="Total journal entries recorded")
    users_count: int = Field(..., description="Number of registered users")
