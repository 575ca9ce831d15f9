"""
Internal endpoints for cron jobs and operators (bearer INTERNAL_API_SECRET)
"""
from fastapi import APIRouter, Depends

from reecher.auth import verify_internal_token
from reecher.models import ReaperReport
from reecher.services import Services, get_services

router = APIRouter(prefix="/internal", tags=["Internal"], dependencies=[Depends(verify_internal_token)])


@router.post("/reaper/sweep", response_model=ReaperReport)
async def run_reaper_sweep(services: Services = Depends(get_services)):
    return await services.reaper.sweep()
