from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
OTP_RE = re.compile(r"^\d{6}$")


def is_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value or ""))


def password_problems(password: str) -> List[str]:
    problems = []
    if len(password) < 8:
        problems.append("Password must be at least 8 characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        problems.append("Password must contain at least one digit")
    if not re.search(r"[^A-Za-z0-9]", password):
        problems.append("Password must contain at least one special character")
    return problems


def first_error(err: ValidationError) -> str:
    """One line for the step's error slot."""
    e = err.errors()[0]
    msg = e.get("msg", "Invalid input")
    return msg.removeprefix("Value error, ")


class PersonalForm(BaseModel):
    firstname: str = Field(min_length=2, max_length=100)
    lastname: str = Field(min_length=2, max_length=100)
    password: str
    confirm_password: str
    ai_name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    ai_role: Optional[str] = Field(default=None, max_length=200)

    @field_validator("password")
    @classmethod
    def _complex_enough(cls, v: str) -> str:
        problems = password_problems(v)
        if problems:
            raise ValueError(problems[0])
        return v

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(include={"firstname", "lastname", "password", "confirm_password", "ai_name", "ai_role"}, exclude_none=True)


class BusinessForm(PersonalForm):
    business_name: str = Field(min_length=2, max_length=200)
    business_type: str = Field(min_length=2, max_length=200)
    employee_count: int = Field(default=0, ge=0)

    def payload(self) -> Dict[str, Any]:
        data = super().payload()
        data["business"] = {
            "business_name": self.business_name,
            "business_type": self.business_type,
            "employee_count": self.employee_count,
        }
        return data
