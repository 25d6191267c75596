"""
Rule configuration endpoints: read, update, history and rollback.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from attendsheet.api.v1.deps import (get_current_active_user, get_services,
                                     require_admin)
from attendsheet.models.rule_config import RuleConfig
from attendsheet.models.user import User
from attendsheet.schemas.rules import (RollbackRequest, RuleConfigRead,
                                       RuleConfigUpdate, RuleSet,
                                       RuleSnapshotRead)
from attendsheet.services.container import Services

router = APIRouter(prefix="/rules", tags=["rules"])


def _to_read(row: RuleConfig) -> RuleConfigRead:
    return RuleConfigRead(
        company_id=row.company_id,
        version=row.version,
        rules=RuleSet.model_validate(row.rules),
        updated_by=row.updated_by,
        updated_at=row.updated_at,
    )


@router.get("/{company_id}", response_model=RuleConfigRead)
async def get_rules(
    company_id: str,
    services: Services = Depends(get_services),
    _user: User = Depends(get_current_active_user),
) -> RuleConfigRead:
    return _to_read(await services.rules.get_record(company_id))


@router.put("/{company_id}", response_model=RuleConfigRead)
async def update_rules(
    company_id: str,
    body: RuleConfigUpdate,
    services: Services = Depends(get_services),
    admin: User = Depends(require_admin),
) -> RuleConfigRead:
    """Replace the company's rule set. Rejected with 422 if it is inconsistent."""
    row = await services.rules.update_config(company_id, body.rules, admin.email, body.reason)
    return _to_read(row)


@router.get("/{company_id}/history", response_model=list[RuleSnapshotRead])
async def rule_history(
    company_id: str,
    services: Services = Depends(get_services),
    _user: User = Depends(get_current_active_user),
) -> list[RuleSnapshotRead]:
    return [RuleSnapshotRead.model_validate(s) for s in await services.rules.history(company_id)]


@router.post("/{company_id}/rollback/{version}", response_model=RuleConfigRead)
async def rollback_rules(
    company_id: str,
    version: int,
    body: RollbackRequest | None = None,
    services: Services = Depends(get_services),
    admin: User = Depends(require_admin),
) -> RuleConfigRead:
    row = await services.rules.rollback(
        company_id, version, admin.email, body.reason if body else None
    )
    return _to_read(row)
