from typing import Dict, Optional, Union
from sqlalchemy import BigInteger
from sqlmodel import Field, SQLModel, Column, JSON

Amount = Union[int, float]


class CurrentBalance(SQLModel, table=True):
    __tablename__ = "current_balance"
    user_id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    # currency -> amount
    balances: Dict[str, Amount] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))


class PastBalance(SQLModel, table=True):
    __tablename__ = "past_balance"
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    balances: Dict[str, Amount] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    # record added time, unix epoch milliseconds
    changed: int = Field(sa_type=BigInteger, index=True)
