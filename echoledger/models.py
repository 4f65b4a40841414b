from __future__ import annotations

from enum import Enum
from typing import Any, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class AccountType(str, Enum):
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"

    @classmethod
    def parse(cls, value: Any) -> Optional["AccountType"]:
        """Accepts "personal", "BUSINESS", an AccountType or None."""
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return None

    @property
    def slug(self) -> str:
        return self.value.lower()


class DraftKey(str, Enum):
    ACCOUNT_TYPE = "accountType"
    SELECTED_PLAN = "selectedPlan"
    VERIFICATION_EMAIL = "verificationEmail"
    OTP_SET = "otpSet"
    SESSION_ID = "sessionId"


class DurableKey(str, Enum):
    ACCESS_TOKEN = "accessToken"
    USER = "user"


class Envelope(BaseModel, Generic[T]):
    """Wrapper every REST response arrives in."""

    model_config = ConfigDict(extra="ignore")

    statusCode: int = 200
    message: str = ""
    body: Optional[T] = None
    data: Optional[T] = None

    @property
    def payload(self) -> Optional[T]:
        return self.body if self.body is not None else self.data

    @property
    def ok(self) -> bool:
        return self.statusCode < 400


def decode_envelope(raw: Any, status_code: int = 200) -> Envelope[Any]:
    if not isinstance(raw, dict):
        return Envelope[Any](statusCode=status_code, body=raw)
    data = dict(raw)
    data.setdefault("statusCode", status_code)
    if data.get("message") is None:
        data["message"] = ""
    return Envelope[Any].model_validate(data)


class BusinessDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    business_name: str
    business_type: str
    employee_count: Optional[int] = None


class User(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    firstname: str = ""
    lastname: str = ""
    email: str = ""
    type: Optional[AccountType] = None
    role_id: Optional[str] = None
    is_verified: bool = False
    ai_name: Optional[str] = None
    ai_role: Optional[str] = None
    business: Optional[BusinessDetails] = None
    plan: Optional[str] = None


class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan: str
    name: str
    price: float = 0
    currency: str = "USD"
    features: List[str] = Field(default_factory=list)
    limits: dict = Field(default_factory=dict)


class SessionDraft(BaseModel):
    account_type: Optional[AccountType] = None
    selected_plan: Optional[str] = None
    verification_email: Optional[str] = None
    issued_otp: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    async def load(cls, store) -> "SessionDraft":
        raw = await store.snapshot()
        return cls(
            account_type=AccountType.parse(raw.get(DraftKey.ACCOUNT_TYPE.value)),
            selected_plan=raw.get(DraftKey.SELECTED_PLAN.value) or None,
            verification_email=raw.get(DraftKey.VERIFICATION_EMAIL.value) or None,
            issued_otp=raw.get(DraftKey.OTP_SET.value) or None,
            session_id=raw.get(DraftKey.SESSION_ID.value) or None,
        )


# ledger

TransactionType = Literal["income", "expense"]
EmployeeRole = Literal["admin", "manager", "employee", "accountant"]


class TransactionIn(BaseModel):
    buyer_name: str
    description: str
    date: str
    amount: float
    type: TransactionType
    currency: Optional[str] = None


class TransactionPatch(BaseModel):
    buyer_name: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    amount: Optional[float] = None
    type: Optional[TransactionType] = None
    currency: Optional[str] = None


class BudgetExpense(BaseModel):
    category: str
    amount: float = 0


class BudgetAnalysisIn(BaseModel):
    currency: str
    month: int = Field(ge=1, le=12)
    year: int
    earnings: float
    budgeted_expenses: List[BudgetExpense] = Field(default_factory=list)
    actual_expenses: List[BudgetExpense] = Field(default_factory=list)

    @property
    def total_budgeted(self) -> float:
        return sum(e.amount for e in self.budgeted_expenses)

    @property
    def total_actual(self) -> float:
        return sum(e.amount for e in self.actual_expenses)


class Period(BaseModel):
    year: int
    month: Optional[int] = Field(default=None, ge=1, le=12)
