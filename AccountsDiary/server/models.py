import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class User(SQLModel, table=True):
    __tablename__ = 'users'

    id: str = Field(primary_key=True)
    email: str = Field(index=True, unique=True)
    password_hash: str
    name: str = ''
    created_at: datetime.datetime = Field(default_factory=utcnow)


class Expense(SQLModel, table=True):
    """An expense row, keyed by the client-generated id and its owner."""
    __tablename__ = 'expenses'

    id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True, index=True)
    date: datetime.date = Field(index=True)
    description: str = ''
    amount: float = 0.0
    main_category: str = ''
    sub_category: str = ''
    deleted: bool = Field(default=False, index=True)
    created_at: datetime.datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime.datetime] = Field(default_factory=utcnow)
