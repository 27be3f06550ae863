"""
报表路由（管理员）
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.security import CurrentUser, get_current_user
from ...services import ConsistencyService, ReportService
from ..deps import get_consistency_service, get_report_service

router = APIRouter()


@router.get("/orders/logs/")
def reservation_logs(
    limit: int = Query(200, ge=1, le=1000),
    current_user: CurrentUser = Depends(get_current_user),
    service: ReportService = Depends(get_report_service),
):
    return create_success_response(service.reservation_logs(current_user, limit=limit))


@router.get("/orders/daily-counts/")
def daily_counts(
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: ReportService = Depends(get_report_service),
):
    return create_success_response(service.daily_counts(current_user, start=start, end=end))


@router.get("/consistency/")
def consistency_check(
    include_warnings: bool = Query(True),
    current_user: CurrentUser = Depends(get_current_user),
    service: ConsistencyService = Depends(get_consistency_service),
):
    return create_success_response(service.check_data_consistency(current_user, include_warnings))


@router.post("/consistency/fix/")
def consistency_fix(
    current_user: CurrentUser = Depends(get_current_user),
    service: ConsistencyService = Depends(get_consistency_service),
):
    return create_success_response(service.fix_capacity_counters(current_user))
