"""
Reports router
--------------
Purpose:
- Expose the resolution engine over HTTP for dashboards and report builders.
- One endpoint: resolve a (client, date range, platform) to report data plus
  provenance (debug + validation).
Design choices:
- Thin caller: all tier logic lives in ResolutionEngine.
- Malformed requests (start after end, future start, unknown platform) are
  422; upstream failures are still 200 with success=false so the UI can show
  the platform's message next to the report.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from adreport.exceptions import FetchValidationError
from adreport.schemas import DateRange, FetchRequest, ResolutionResult, ResolveBody
from adreport.services.resolution_engine import ResolutionEngine
from adreport.state import get_resolution_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clients", tags=["reports"])


@router.post("/{client_id}/metrics/resolve", response_model=ResolutionResult)
async def resolve_metrics(
    client_id: str,
    body: ResolveBody,
    engine: ResolutionEngine = Depends(get_resolution_engine),
):
    """
    Resolve campaign metrics for one client, platform and date range.

    Returns the report data together with where it came from
    (cache-fresh, cache-stale, live-api or database).
    """
    request = FetchRequest(
        client_id=client_id,
        date_range=DateRange(start=body.start, end=body.end),
        platform=body.platform,
        force_fresh=body.force_fresh,
        reason=body.reason,
    )
    try:
        return await engine.resolve(request)
    except FetchValidationError as e:
        logger.info(f"[REPORTS] Rejected request for {client_id}: {e.message}")
        raise HTTPException(status_code=422, detail=e.message) from e
