import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from harvester.schemas.status import CycleReportOut, CycleTriggerOut
from harvester.services.runtime import HarvesterRuntime, get_runtime

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=CycleTriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_cycle(request: Request, runtime: HarvesterRuntime = Depends(get_runtime)) -> CycleTriggerOut:
    if not runtime.orchestrator.try_claim():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="scraping cycle already in progress")

    logger.info("manual scraping cycle triggered")
    task = asyncio.create_task(runtime.run_and_record("manual", claimed=True))
    background: set[asyncio.Task] = request.app.state.background_tasks
    background.add(task)
    task.add_done_callback(background.discard)
    return CycleTriggerOut(accepted=True, trigger="manual")


@router.get("/recent", response_model=list[CycleReportOut])
async def recent_cycles(runtime: HarvesterRuntime = Depends(get_runtime)) -> list[CycleReportOut]:
    return [CycleReportOut.from_report(report) for report in reversed(runtime.ledger.recent())]
