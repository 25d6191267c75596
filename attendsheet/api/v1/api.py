"""
V1 API router aggregator: wires all endpoint modules together.
"""

from fastapi import APIRouter

from attendsheet.api.v1.endpoints import audit, auth, records, rules, sheets

api_router = APIRouter()

# Auth (login, refresh, operator management)
api_router.include_router(auth.router)

# Company rule configuration
api_router.include_router(rules.router)

# Sheets, batch send / recall / archive
api_router.include_router(sheets.router)

# Record edits and employee events
api_router.include_router(records.router)

# Audit log, health
api_router.include_router(audit.router)
