from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, RecurringInterval, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType
    balance: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)
    is_default: bool = False


class TransactionIn(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=500)
    date: datetime
    account_id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=100)
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @model_validator(mode="after")
    def _check_recurrence(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError(
                "Recurring interval is required for recurring transactions"
            )
        if not self.is_recurring and self.recurring_interval is not None:
            raise ValueError("Recurring interval is only valid for recurring transactions")
        return self


class BudgetIn(BaseModel):
    amount: Decimal = Field(..., ge=0, max_digits=14, decimal_places=2)


class RecurrenceDue(BaseModel):
    """Work item emitted once per due recurring transaction."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    kind: Literal["transaction.recurring.process"] = "transaction.recurring.process"
    transaction_id: str = Field(..., min_length=1, alias="transactionId")
    user_id: str = Field(..., min_length=1, alias="userId")


class MonthlyStats(BaseModel):
    total_income: Decimal = Decimal("0")
    total_expenses: Decimal = Decimal("0")
    by_category: dict[str, Decimal] = Field(default_factory=dict)

    @property
    def net_income(self) -> Decimal:
        return self.total_income - self.total_expenses


class BudgetAlertData(BaseModel):
    account_name: str
    percentage_used: Decimal
    budget_amount: Decimal
    total_expenses: Decimal


class MonthlyReportData(BaseModel):
    month: str
    stats: MonthlyStats
    insights: list[str]
