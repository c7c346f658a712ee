from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from zoneinfo import ZoneInfo

from app.config import settings


@dataclass(frozen=True)
class ReconciliationPolicy:
    business_timezone: str = 'UTC'
    batch_window_seconds: int = 60
    max_processing_attempts: int = 3
    revenue_tolerance: Decimal = Decimal('0.01')
    anomaly_penalty: int = 20
    missing_machine_data_penalty: int = 30
    zero_revenue_penalty: int = 10
    grand_total_machine_id: str = 'grand_total'

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.business_timezone)


def _validate_policy(policy: ReconciliationPolicy) -> None:
    if policy.batch_window_seconds <= 0:
        raise ValueError('Batch window must be greater than zero seconds')
    if policy.max_processing_attempts < 1:
        raise ValueError('Max processing attempts must be at least 1')
    if policy.revenue_tolerance < 0:
        raise ValueError('Revenue tolerance cannot be negative')


def policy_from_settings() -> ReconciliationPolicy:
    policy = ReconciliationPolicy(
        business_timezone=settings.business_timezone,
        batch_window_seconds=settings.batch_window_seconds,
        max_processing_attempts=settings.max_processing_attempts,
        revenue_tolerance=Decimal(str(settings.revenue_tolerance)),
        anomaly_penalty=settings.quality_anomaly_penalty,
        missing_machine_data_penalty=settings.quality_missing_machine_data_penalty,
        zero_revenue_penalty=settings.quality_zero_revenue_penalty,
        grand_total_machine_id=settings.grand_total_machine_id,
    )
    _validate_policy(policy)
    return policy


def resolve_policy(policy: ReconciliationPolicy | None) -> ReconciliationPolicy:
    if policy is None:
        return policy_from_settings()
    _validate_policy(policy)
    return policy
