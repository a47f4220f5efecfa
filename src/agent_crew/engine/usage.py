"""Best-effort usage ledger writes."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from agent_crew.engine.models import BillingModel, UsageRecordWrite
from agent_crew.engine.repository import EngineRepository
from agent_crew.engine.routing import PROVIDERS, normalize_provider

logger = logging.getLogger(__name__)


def detect_billing_model(provider: str) -> BillingModel:
    """Per-token providers are charged by usage; self-hosted ones report no dollar cost."""

    spec = PROVIDERS.get(normalize_provider(provider))
    if spec is None:
        return BillingModel.UNKNOWN
    return spec.billing_model


class UsageLedger:
    """Append usage records; failures are logged and never raised."""

    def __init__(self, repository: EngineRepository) -> None:
        self._repository = repository

    def record(self, record: UsageRecordWrite) -> bool:
        billing_model = detect_billing_model(record.provider)
        cost_usd = (
            record.usage.cost_estimate_usd if billing_model is BillingModel.PER_TOKEN else 0.0
        )
        try:
            self._repository.add_usage_record(
                record=record,
                billing_model=billing_model,
                cost_usd=cost_usd,
            )
        except SQLAlchemyError as error:
            logger.warning(
                "Failed to write %s usage record (task=%s run=%s step=%s): %s",
                record.event_type.value,
                record.task_id,
                record.team_run_id,
                record.step_index,
                error,
            )
            return False
        logger.info(
            "Recorded %s usage: %d tokens, $%.4f (%s)",
            record.event_type.value,
            record.usage.total_tokens,
            record.usage.cost_estimate_usd,
            billing_model.value,
        )
        return True
