"""
Investments API endpoints
Investment accounts, held assets, asset prices and worth history
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from typing import Optional

from ...database import BudgetDatabase
from ...price_sources import AssetPricer
from ...reports import ReportGenerator
from .deps import get_db, get_pricer, get_reports

router = APIRouter()


# Pydantic models
class InvestmentAccountCreate(BaseModel):
    name: str
    currency: str = "USD"


class AssetSearch(BaseModel):
    query: str


class AssetCreate(BaseModel):
    api_source: str
    asset_id: Optional[str] = None
    symbol: str
    name: Optional[str] = None
    amount: Decimal = Decimal("0")


class AssetUpdate(BaseModel):
    amount: Decimal


class ManualPrice(BaseModel):
    price: Decimal
    date: Optional[str] = None


@router.get("/investment-accounts")
async def get_investment_accounts(
    db: BudgetDatabase = Depends(get_db),
    reports: ReportGenerator = Depends(get_reports)
):
    """Get all investment accounts with their assets and holdings value"""
    accounts = db.get_investment_accounts()
    for account in accounts:
        account['balance'] = reports.compute_investment_account_balance(account['account_id'])
    return accounts


@router.post("/investment-accounts")
async def create_investment_account(
    account: InvestmentAccountCreate,
    db: BudgetDatabase = Depends(get_db)
):
    """Create an investment account and its underlying account together"""
    created = db.add_investment_account(account.name, account.currency)
    created['balance'] = 0
    return created


@router.get("/investment-accounts/{investment_account_id}/worth-history")
async def get_worth_history(
    investment_account_id: int,
    timeframe: str = Query("30d"),
    reports: ReportGenerator = Depends(get_reports)
):
    """Account value per day (30d) or per month (12m)"""
    return reports.compute_worth_history(investment_account_id, timeframe)


@router.post("/investment-accounts/{investment_account_id}/assets")
async def add_asset(
    investment_account_id: int,
    asset: AssetCreate,
    db: BudgetDatabase = Depends(get_db)
):
    """Add an asset to an investment account"""
    return db.add_asset(investment_account_id, asset.model_dump())


@router.post("/investment-assets/search")
async def search_assets(request: AssetSearch, pricer: AssetPricer = Depends(get_pricer)):
    """Search every price source for matching assets"""
    return pricer.search(request.query)


@router.patch("/investment-assets/{asset_id}")
async def update_asset(asset_id: int, asset: AssetUpdate, db: BudgetDatabase = Depends(get_db)):
    """Change the held amount of an asset"""
    return db.update_asset_amount(asset_id, asset.amount)


@router.delete("/investment-assets/{asset_id}")
async def delete_asset(asset_id: int, db: BudgetDatabase = Depends(get_db)):
    db.delete_asset(asset_id)
    return {"message": "Asset deleted successfully", "asset_id": asset_id}


@router.get("/investment-assets/{asset_id}/price")
async def get_asset_price(asset_id: int, pricer: AssetPricer = Depends(get_pricer)):
    """Current price, fetched at most once a day per asset"""
    return pricer.get_price(asset_id)


@router.patch("/investment-assets/{asset_id}/price")
async def set_asset_price(asset_id: int, price: ManualPrice, pricer: AssetPricer = Depends(get_pricer)):
    """Record a manually entered price"""
    return pricer.set_manual_price(asset_id, price.price, price.date)
