"""
Accounts API endpoints
Manage accounts; balances are computed from the ledger on every read
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Literal, Optional

from ...database import BudgetDatabase
from ...reports import ReportGenerator
from .deps import get_db, get_reports

router = APIRouter()

AccountType = Literal['bank', 'credit', 'savings', 'investment']


# Pydantic models
class AccountCreate(BaseModel):
    name: str
    type: AccountType
    currency: str = "USD"


class AccountUpdate(BaseModel):
    name: Optional[str] = None
    type: Optional[AccountType] = None
    currency: Optional[str] = None


@router.get("/")
async def get_accounts(reports: ReportGenerator = Depends(get_reports)):
    """Get all accounts with their computed balance"""
    return reports.get_accounts_with_balances()


@router.get("/{account_id}")
async def get_account(
    account_id: int,
    db: BudgetDatabase = Depends(get_db),
    reports: ReportGenerator = Depends(get_reports)
):
    """Get specific account by ID"""
    account = db.get_account(account_id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found"
        )
    account['balance'] = reports.get_account_balance(account)
    return account


@router.post("/")
async def create_account(account: AccountCreate, db: BudgetDatabase = Depends(get_db)):
    """Create new account"""
    if account.type == 'investment':
        created = db.add_investment_account(account.name, account.currency)
        result = db.get_account(created['account_id'])
    else:
        result = db.add_account(account.name, account.type, account.currency)
    result['balance'] = 0
    return result


@router.put("/{account_id}")
async def update_account(
    account_id: int,
    account: AccountUpdate,
    db: BudgetDatabase = Depends(get_db),
    reports: ReportGenerator = Depends(get_reports)
):
    """Update account"""
    update_data = account.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update"
        )

    updated = db.update_account(account_id, update_data)
    updated['balance'] = reports.get_account_balance(updated)
    return updated


@router.delete("/{account_id}")
async def delete_account(account_id: int, db: BudgetDatabase = Depends(get_db)):
    """Delete account; refused while transactions still reference it"""
    db.delete_account(account_id)
    return {"message": "Account deleted successfully", "account_id": account_id}
