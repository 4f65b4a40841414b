"""
Signup wizard: account type -> plan -> email -> code -> register.

Every step reads the tab's draft, refuses to run when an earlier step's
field is missing (answering with the step to go back to) and writes its own
fields in one go when it succeeds.
"""
from __future__ import annotations

import logging
import math
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .api import format_error
from .auth_client import AuthClient
from .auth_session import landing_route, persist_session
from .forms import OTP_RE, BusinessForm, PersonalForm, first_error, is_email
from .models import AccountType, DraftKey, Envelope, Plan, SessionDraft
from .redis_repo import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "free"
PERSONAL_PLANS = ("free", "pro")
OTP_FAILED = "Invalid or expired OTP. Please try again."

FALLBACK_PLANS = [
    Plan(plan="free", name="Free", price=0, currency="USD",
         features=["100 transactions/month", "10 AI queries/day", "Basic analytics"]),
    Plan(plan="pro", name="Pro", price=19, currency="USD",
         features=["Unlimited transactions", "Unlimited AI queries", "Advanced analytics", "Priority support"]),
]


class Step(str, Enum):
    ACCOUNT_TYPE = "account-type"
    PLAN_SELECTION = "plan-selection"
    EMAIL_VERIFICATION = "email-verification"
    OTP_VERIFICATION = "otp-verification"
    REGISTER = "register"
    AUTHENTICATED = "authenticated"

    def route(self, account_type: Optional[AccountType] = None) -> str:
        if self is Step.AUTHENTICATED:
            return "/dashboard"
        path = f"/auth/{self.value}"
        if account_type and self in (Step.PLAN_SELECTION, Step.REGISTER):
            path += f"?type={account_type.slug}"
        return path


def guard(step: Step, draft: SessionDraft, requested_type: Optional[AccountType] = None) -> Optional[Step]:
    """Where to send the user instead of `step`, or None if it may be shown."""
    if step is Step.PLAN_SELECTION:
        if requested_type is None or draft.account_type != requested_type:
            return Step.ACCOUNT_TYPE
    elif step is Step.OTP_VERIFICATION:
        if not draft.verification_email:
            return Step.EMAIL_VERIFICATION
    elif step is Step.REGISTER:
        if not draft.session_id or draft.account_type is None:
            return Step.EMAIL_VERIFICATION
        if requested_type is not None and requested_type != draft.account_type:
            return Step.EMAIL_VERIFICATION
        if not draft.selected_plan:
            return Step.PLAN_SELECTION
    return None


def resolve(step: Step, draft: SessionDraft, requested_type: Optional[AccountType] = None) -> Step:
    seen = set()
    while step not in seen:
        seen.add(step)
        target = guard(step, draft, requested_type)
        if target is None:
            return step
        # redirects carry the type from the draft, as the routes do
        requested_type = draft.account_type
        step = target
    return step


def transition(step: Step, draft: SessionDraft) -> Step:
    """Next step after `step` succeeded with `draft` already updated."""
    if step is Step.ACCOUNT_TYPE:
        return Step.PLAN_SELECTION
    if step is Step.PLAN_SELECTION:
        return Step.EMAIL_VERIFICATION
    if step is Step.EMAIL_VERIFICATION:
        return Step.OTP_VERIFICATION
    if step is Step.OTP_VERIFICATION:
        return Step.REGISTER if draft.account_type is not None else Step.ACCOUNT_TYPE
    if step is Step.REGISTER:
        return Step.AUTHENTICATED
    return step


def otp_verified(envelope: Envelope[Any]) -> Optional[str]:
    """Session id from a verify response, or None.

    Any truthy `verified` counts, whatever statusCode says: the backend
    reports domain errors with 200 and has been seen sending ids with 4xx.
    Kept permissive on purpose; tightening it changes who gets through.
    """
    verified = None
    for part in (envelope.body, envelope.data):
        if isinstance(part, dict) and part.get("verified"):
            verified = part["verified"]
            break
    if (envelope.statusCode == 200 and verified) or verified:
        return str(verified)
    return None


class ResendCooldown:
    def __init__(self, seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self.clock = clock
        self.until: Optional[float] = None

    def start(self) -> None:
        self.until = self.clock() + self.seconds

    def reset(self) -> None:
        self.until = None

    @property
    def remaining(self) -> int:
        if self.until is None:
            return 0
        return max(0, math.ceil(self.until - self.clock()))

    @property
    def active(self) -> bool:
        return self.remaining > 0


@dataclass
class StepResult:
    step: Step
    error: Optional[str] = None
    redirect: bool = False
    busy: bool = False
    route: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and not self.busy


class RegistrationFlow:
    def __init__(
        self,
        drafts: SessionStore,
        durable: SessionStore,
        auth: AuthClient,
        expose_dev_otp: bool = False,
        cooldown: Optional[ResendCooldown] = None,
    ):
        self.drafts = drafts
        self.durable = durable
        self.auth = auth
        self.expose_dev_otp = expose_dev_otp
        self.cooldown = cooldown or ResendCooldown()
        self._busy: set = set()

    # helpers

    async def draft(self) -> SessionDraft:
        return await SessionDraft.load(self.drafts)

    def _at(self, step: Step, draft: SessionDraft, **kw) -> StepResult:
        return StepResult(step=step, route=step.route(draft.account_type), **kw)

    async def _check(self, step: Step, requested_type: Optional[AccountType] = None):
        draft = await self.draft()
        target = resolve(step, draft, requested_type)
        if target is not step:
            logger.info("signup guard: %s -> %s", step.value, target.value)
            return draft, self._at(target, draft, redirect=True)
        return draft, None

    async def _forward(self, step: Step) -> StepResult:
        draft = await self.draft()
        return self._at(resolve(transition(step, draft), draft, draft.account_type), draft)

    @asynccontextmanager
    async def _submitting(self, key):
        if key in self._busy:
            yield False
            return
        self._busy.add(key)
        try:
            yield True
        finally:
            self._busy.discard(key)

    # steps

    async def enter(self, step: Step, requested_type: Union[AccountType, str, None] = None) -> StepResult:
        requested = AccountType.parse(requested_type)
        draft, redirect = await self._check(step, requested)
        if redirect:
            return redirect
        data: Dict[str, Any] = {}
        if step is Step.OTP_VERIFICATION:
            self.cooldown.reset()
            data["email"] = draft.verification_email
            if self.expose_dev_otp and draft.issued_otp:
                data["dev_otp"] = draft.issued_otp
        return self._at(step, draft, data=data)

    async def choose_account_type(self, account_type: Union[AccountType, str]) -> StepResult:
        parsed = AccountType.parse(account_type)
        if parsed is None:
            draft = await self.draft()
            return self._at(Step.ACCOUNT_TYPE, draft, error="Choose a personal or business account")
        await self.drafts.set(DraftKey.ACCOUNT_TYPE, parsed.value)
        return await self._forward(Step.ACCOUNT_TYPE)

    async def plans(self, requested_type: Union[AccountType, str, None] = None) -> List[Plan]:
        account_type = AccountType.parse(requested_type) or (await self.draft()).account_type
        try:
            envelope = await self.auth.plans()
            plans = [Plan.model_validate(p) for p in (envelope.payload or [])]
        except Exception as e:
            logger.warning("plans unavailable, using built-in list: %s", format_error(e))
            return list(FALLBACK_PLANS)
        if account_type is AccountType.PERSONAL:
            plans = [p for p in plans if p.plan in PERSONAL_PLANS]
        return plans

    async def choose_plan(self, plan: str, requested_type: Union[AccountType, str, None] = None) -> StepResult:
        draft, redirect = await self._check(Step.PLAN_SELECTION, AccountType.parse(requested_type) or (await self.draft()).account_type)
        if redirect:
            return redirect
        await self.drafts.set(DraftKey.SELECTED_PLAN, plan or DEFAULT_PLAN)
        return await self._forward(Step.PLAN_SELECTION)

    async def skip_plan(self, requested_type: Union[AccountType, str, None] = None) -> StepResult:
        return await self.choose_plan(DEFAULT_PLAN, requested_type)

    async def submit_email(self, email: str) -> StepResult:
        email = (email or "").strip()
        async with self._submitting(Step.EMAIL_VERIFICATION) as free:
            draft = await self.draft()
            if not free:
                return self._at(Step.EMAIL_VERIFICATION, draft, busy=True)
            if not is_email(email):
                return self._at(Step.EMAIL_VERIFICATION, draft, error="Please enter a valid email address")
            try:
                envelope = await self.auth.send_otp(email)
            except Exception as e:
                logger.exception("otp send failed")
                return self._at(Step.EMAIL_VERIFICATION, draft, error=format_error(e))

            values = {DraftKey.VERIFICATION_EMAIL: email}
            payload = envelope.payload if isinstance(envelope.payload, dict) else {}
            if payload.get("otp"):
                values[DraftKey.OTP_SET] = str(payload["otp"])
            await self.drafts.set_many(values)
            if DraftKey.OTP_SET not in values:
                await self.drafts.delete(DraftKey.OTP_SET)
            return await self._forward(Step.EMAIL_VERIFICATION)

    async def resend_code(self) -> StepResult:
        draft, redirect = await self._check(Step.OTP_VERIFICATION)
        if redirect:
            return redirect
        async with self._submitting("resend") as free:
            if not free or self.cooldown.active:
                return self._at(Step.OTP_VERIFICATION, draft, busy=True, data={"cooldown": self.cooldown.remaining})
            try:
                await self.auth.resend_otp(draft.verification_email)
            except Exception as e:
                logger.exception("otp resend failed")
                return self._at(Step.OTP_VERIFICATION, draft, error=format_error(e))
            self.cooldown.start()
            return self._at(Step.OTP_VERIFICATION, draft, data={"cooldown": self.cooldown.remaining})

    async def verify_code(self, code: str) -> StepResult:
        draft, redirect = await self._check(Step.OTP_VERIFICATION)
        if redirect:
            return redirect
        code = (code or "").strip()
        async with self._submitting(Step.OTP_VERIFICATION) as free:
            if not free:
                return self._at(Step.OTP_VERIFICATION, draft, busy=True)
            if not OTP_RE.match(code):
                return self._at(Step.OTP_VERIFICATION, draft, error="Code must be 6 digits")
            try:
                envelope = await self.auth.verify_otp(draft.verification_email, code)
            except Exception as e:
                logger.exception("otp verify failed")
                return self._at(Step.OTP_VERIFICATION, draft, error=format_error(e))

            session_id = otp_verified(envelope)
            if session_id is None:
                return self._at(Step.OTP_VERIFICATION, draft, error=envelope.message or OTP_FAILED)
            await self.drafts.set(DraftKey.SESSION_ID, session_id)
            return await self._forward(Step.OTP_VERIFICATION)

    async def register(self, form: Dict[str, Any], requested_type: Union[AccountType, str, None] = None) -> StepResult:
        requested = AccountType.parse(requested_type)
        draft, redirect = await self._check(Step.REGISTER, requested)
        if redirect:
            return redirect
        account_type = draft.account_type
        async with self._submitting(Step.REGISTER) as free:
            if not free:
                return self._at(Step.REGISTER, draft, busy=True)
            form_cls = BusinessForm if account_type is AccountType.BUSINESS else PersonalForm
            try:
                parsed = form_cls.model_validate(form)
            except ValidationError as e:
                return self._at(Step.REGISTER, draft, error=first_error(e))

            payload = parsed.payload()
            payload.update(sessionId=draft.session_id, type=account_type.value)
            try:
                envelope = await self.auth.register(payload)
                user = await persist_session(self.durable, envelope, fallback_type=account_type)
            except Exception as e:
                logger.exception("registration failed")
                return self._at(Step.REGISTER, draft, error=format_error(e))

            await self.drafts.delete(*DraftKey)
            logger.info("registered user=%s type=%s", user.id, user.type)
            return StepResult(
                step=Step.AUTHENTICATED,
                route=landing_route(user),
                data={"user": user.model_dump(mode="json", exclude_none=True)},
            )
