from datetime import date

from fastapi import HTTPException

from app.services.policy import ReconciliationPolicy, policy_from_settings


def get_policy() -> ReconciliationPolicy:
    return policy_from_settings()


def parse_day(value: str | None, *, field: str = 'date') -> date:
    if not value:
        raise HTTPException(status_code=400, detail=f'Missing {field}')
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {field}: expected YYYY-MM-DD') from exc
