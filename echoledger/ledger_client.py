from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .api import ApiClient, ApiError
from .models import (
    BudgetAnalysisIn,
    EmployeeRole,
    Envelope,
    Period,
    TransactionIn,
    TransactionPatch,
    TransactionType,
)

logger = logging.getLogger(__name__)

# answered by plan-gated endpoints when the account's plan lacks the feature
PLAN_LIMITED = (402, 403)


def _query(**params: Any) -> Dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class TransactionClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def create(self, data: TransactionIn) -> Envelope[Any]:
        return await self.api.post("/transactions", json=data.model_dump(exclude_none=True))

    async def recent(self, limit: int = 5) -> Envelope[Any]: return await self.api.get("/transactions/recent", params={"limit": limit})

    async def list_all(
        self,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        type: Optional[TransactionType] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> Envelope[Any]:
        # zero limit/offset means "not set"
        params = _query(limit=limit or None, offset=offset or None, type=type, startDate=start_date, endDate=end_date)
        return await self.api.get("/transactions", params=params)

    async def get(self, tid: str) -> Envelope[Any]: return await self.api.get(f"/transactions/{tid}")
    async def delete(self, tid: str) -> Envelope[Any]: return await self.api.delete(f"/transactions/{tid}")

    async def update(self, tid: str, patch: TransactionPatch) -> Envelope[Any]:
        return await self.api.put(f"/transactions/{tid}", json=patch.model_dump(exclude_none=True))

    async def ai_suggestion(self, prompt: str) -> str:
        """One-off prompt outside any conversation; returns the reply text or ""."""
        envelope = await self.api.post("/prompt/send", json={"prompt": prompt})
        payload = envelope.payload if isinstance(envelope.payload, dict) else {}
        return payload.get("response") or ""


class BudgetClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def analyze(self, data: BudgetAnalysisIn) -> Dict[str, Any]:
        envelope = await self.api.post("/budget/analyze", json=data.model_dump())
        result = envelope.payload if isinstance(envelope.payload, dict) else {}
        total_budgeted, total_actual = data.total_budgeted, data.total_actual
        return {
            **{k: result.get(k) for k in ("id", "user_id", "created_at", "updated_at", "summary", "type", "ai_name")},
            **data.model_dump(),
            "total_budgeted": total_budgeted,
            "total_actual": total_actual,
            "variance": total_budgeted - total_actual,
        }

    async def search(self, month: Optional[int] = None, year: Optional[int] = None, user_id: Optional[str] = None) -> List[Any]:
        envelope = await self.api.get("/budget/search", params=_query(month=month, year=year, user_id=user_id))
        return envelope.body or []

    async def insights(self, budget_id: str) -> List[Any]:
        envelope = await self.api.get(f"/budget/{budget_id}/insights")
        return envelope.data or []

    async def delete(self, budget_id: str) -> Envelope[Any]: return await self.api.delete(f"/budget/{budget_id}/delete")
    async def delete_conversation(self, cid: str) -> Envelope[Any]: return await self.api.delete(f"/budget/{cid}/delete-conversation")


class DataAnalysisClient:
    def __init__(self, api: ApiClient, today=date.today):
        self.api = api
        self.today = today

    def _year_month(self, year: Optional[int], month: Optional[int]) -> tuple[int, int]:
        now = self.today()
        return year or now.year, month or now.month

    async def historical(self, period: str = "month", use_cache: bool = True) -> Envelope[Any]:
        return await self.api.get("/monthly-analysis/historical", params={"period": period, "useCache": use_cache})

    async def compare(self, first: Period, second: Period, currency: str = "USD", use_cache: bool = True) -> Envelope[Any]:
        return await self.api.post("/monthly-analysis/compare", json={
            "firstPeriod": first.model_dump(exclude_none=True),
            "secondPeriod": second.model_dump(exclude_none=True),
            "currency": currency,
            "useCache": use_cache,
        })

    async def multi_period(self, periods: List[Period], currency: str = "USD", use_cache: bool = True) -> Envelope[Any]:
        return await self.api.post("/monthly-analysis/multi-period", json={
            "periods": [p.model_dump(exclude_none=True) for p in periods],
            "currency": currency,
            "useCache": use_cache,
        })

    async def last_12_months(self, end_year: Optional[int] = None, end_month: Optional[int] = None, currency: str = "USD") -> Envelope[Any]:
        year, month = self._year_month(end_year, end_month)
        return await self.api.get("/monthly-analysis/last-12-months", params={"year": year, "month": month, "currency": currency})

    async def year_over_year(self, year: Optional[int] = None, month: Optional[int] = None, currency: str = "USD") -> Envelope[Any]:
        year, month = self._year_month(year, month)
        return await self.api.get("/monthly-analysis/year-over-year", params={"year": year, "month": month, "currency": currency})

    async def quarter(self, year: int, quarter: int, currency: str = "USD") -> Envelope[Any]:
        return await self.api.get("/monthly-analysis/quarter", params={"year": year, "quarter": quarter, "currency": currency})

    async def spending_patterns(self, months: int = 6) -> Envelope[Any]: return await self.api.get("/monthly-analysis/spending-patterns", params={"months": months})
    async def health_score(self, months: int = 3) -> Envelope[Any]: return await self.api.get("/monthly-analysis/health-score", params={"months": months})
    async def forecast_spending(self, months: int = 3) -> Envelope[Any]: return await self.api.get("/monthly-analysis/forecast", params={"monthsToForecast": months})
    async def clear_cache(self) -> Envelope[Any]: return await self.api.post("/monthly-analysis/clear-cache")


class EmployeeClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def invite(self, email: str, role: EmployeeRole, business_id: str) -> Envelope[Any]:
        return await self.api.post("/employees/invite", json={"email": email, "employee_role": role, "business_id": business_id})

    async def accept_invitation(self, employee_id: str) -> Envelope[Any]:
        return await self.api.post("/employees/accept-invitation", json={"employee_id": employee_id})

    async def business_employees(self, bid: str) -> Envelope[Any]: return await self.api.get(f"/employees/business/{bid}")
    async def my_businesses(self) -> Envelope[Any]: return await self.api.get("/employees/my-businesses")
    async def stats(self, bid: str) -> Envelope[Any]: return await self.api.get(f"/employees/stats/{bid}")

    async def update_role(self, bid: str, employee_id: str, role: EmployeeRole) -> Envelope[Any]:
        return await self.api.put(
            "/employees/role",
            json={"employee_id": employee_id, "employee_role": role},
            params={"business_id": bid},
        )

    async def remove(self, bid: str, employee_id: str) -> Envelope[Any]:
        return await self.api.delete(f"/employees/{employee_id}", params={"business_id": bid})

    async def deactivate(self, bid: str, employee_id: str) -> Envelope[Any]:
        return await self.api.put(f"/employees/{employee_id}/deactivate", params={"business_id": bid})


class BusinessMetricsClient:
    def __init__(self, api: ApiClient):
        self.api = api

    async def overview(self, bid: str) -> Envelope[Any]: return await self.api.get(f"/business-metrics/overview/{bid}")
    async def create_transaction(self, bid: str, data: dict) -> Envelope[Any]: return await self.api.post(f"/business-metrics/transactions/{bid}", json=data)
    async def employee_dashboard(self, eid: str, bid: str) -> Envelope[Any]: return await self.api.get(f"/business-metrics/employee-dashboard/{eid}/{bid}")
    async def create_goal(self, bid: str, data: dict) -> Envelope[Any]: return await self.api.post(f"/business-metrics/goals/{bid}", json=data)
    async def employee_goals(self, eid: str) -> Envelope[Any]: return await self.api.get(f"/business-metrics/goals/{eid}")

    async def transactions(self, bid: str, limit: Optional[int] = None) -> Envelope[Any]:
        return await self.api.get(f"/business-metrics/transactions/{bid}", params=_query(limit=limit))

    async def top_performers(self, bid: str, limit: int = 5) -> Envelope[Any]:
        return await self.api.get(f"/business-metrics/top-performers/{bid}", params={"limit": limit})

    async def employee_transactions(self, eid: str, limit: Optional[int] = None) -> Envelope[Any]:
        return await self.api.get(f"/business-metrics/employee-transactions/{eid}", params=_query(limit=limit))

    async def update_goal_progress(self, goal_id: str, current_value: float) -> Envelope[Any]:
        return await self.api.put("/business-metrics/goals/progress", json={"goal_id": goal_id, "current_value": current_value})

    async def _plan_gated(self, path: str, bid: str) -> Optional[Envelope[Any]]:
        try:
            return await self.api.post(path, json={"business_id": bid})
        except ApiError as e:
            if e.status_code not in PLAN_LIMITED:
                raise
            logger.info("%s not on this plan. status=%s", path, e.status_code)
            return None

    async def forecast(self, bid: str) -> Optional[Dict[str, Any]]:
        envelope = await self._plan_gated("/business-metrics/forecast", bid)
        if envelope is None or not isinstance(envelope.body, dict):
            return None
        return envelope.body

    async def anomalies(self, bid: str) -> List[Dict[str, Any]]:
        envelope = await self._plan_gated("/business-metrics/anomalies", bid)
        if envelope is None or not isinstance(envelope.body, list):
            return []
        return envelope.body
