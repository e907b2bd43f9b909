"""
Reports API endpoints
Net-worth trend, spending by tag and income/expense summary
"""
from fastapi import APIRouter, Depends
from typing import Optional

from ...reports import ReportGenerator
from .deps import get_reports

router = APIRouter()


@router.get("/net-worth-trend")
async def get_net_worth_trend(reports: ReportGenerator = Depends(get_reports)):
    """Net worth at each of the last 12 month ends"""
    return reports.compute_net_worth_trend()


@router.get("/reports/tag-breakdown")
async def get_tag_breakdown(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    account_id: Optional[int] = None,
    reports: ReportGenerator = Depends(get_reports)
):
    """Cleared spending grouped by root tag"""
    return reports.tag_breakdown(start_date, end_date, account_id)


@router.get("/reports/summary")
async def get_summary(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    account_id: Optional[int] = None,
    reports: ReportGenerator = Depends(get_reports)
):
    """Cleared income and expenses, transfers excluded"""
    return reports.summary(start_date, end_date, account_id)
