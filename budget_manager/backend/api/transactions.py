"""
Transactions API endpoints
Manage the ledger: single rows, linked transfer pairs, bulk edits and CSV imports
"""
from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Literal, Optional, Union

from ...database import BudgetDatabase
from ...importer import TransactionImporter
from .deps import get_db, get_importer

router = APIRouter()

TransactionType = Literal['income', 'expense', 'transfer']
TransactionStatus = Literal['pending', 'cleared', 'duplicated']


# Pydantic models
class TransactionCreate(BaseModel):
    account_id: Optional[int] = None
    date: str  # ISO format date or datetime string
    description: str = ""
    amount: Decimal
    type: TransactionType
    status: TransactionStatus = 'pending'
    tags: List[int] = []
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None


class TransactionUpdate(BaseModel):
    account_id: Optional[int] = None
    date: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    type: Optional[TransactionType] = None
    status: Optional[TransactionStatus] = None
    tags: Optional[List[int]] = None
    from_account_id: Optional[int] = None
    to_account_id: Optional[int] = None


class BulkDeleteRequest(BaseModel):
    ids: List[int]
    include_linked: bool = False


class BulkUpdateRequest(BaseModel):
    ids: List[int]
    updates: TransactionUpdate


class ImportRow(BaseModel):
    date: Optional[str] = None
    description: Optional[str] = ""
    amount: Union[str, float, None] = None


class BulkImportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transactions: List[ImportRow] = []
    account_id: Optional[int] = Field(None, alias="accountId")


def _parse_tag_filter(tag_id: Optional[str]) -> Optional[int]:
    if not tag_id or tag_id == "all":
        return None
    try:
        return int(tag_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid tag id: {tag_id}"
        )


@router.get("/")
async def get_transactions(
    tag_id: Optional[str] = Query(None, alias="tagId"),
    search: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    account_id: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    db: BudgetDatabase = Depends(get_db)
):
    """Get transactions, newest first, filtered by tag subtree, description text and status"""
    if status_filter == "all":
        status_filter = None
    return db.get_transactions(
        tag_id=_parse_tag_filter(tag_id),
        search=search.strip() if search and search.strip() else None,
        status=status_filter,
        account_id=account_id,
        limit=limit,
        offset=offset
    )


@router.get("/{transaction_id}")
async def get_transaction(transaction_id: int, db: BudgetDatabase = Depends(get_db)):
    """Get specific transaction by ID"""
    transaction = db.get_transaction(transaction_id)
    if not transaction:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )
    return transaction


@router.post("/")
async def create_transaction(transaction: TransactionCreate, db: BudgetDatabase = Depends(get_db)):
    """Create a transaction; a transfer creates a linked pair and returns the outgoing leg"""
    return db.add_transaction(transaction.model_dump())


@router.put("/{transaction_id}")
async def update_transaction(
    transaction_id: int,
    transaction: TransactionUpdate,
    db: BudgetDatabase = Depends(get_db)
):
    """Update a transaction; changes to a transfer leg are mirrored onto its partner"""
    update_data = transaction.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update"
        )
    return db.update_transaction(transaction_id, update_data)


@router.delete("/{transaction_id}")
async def delete_transaction(transaction_id: int, db: BudgetDatabase = Depends(get_db)):
    """Delete a transaction together with its linked transfer leg"""
    deleted = db.delete_transaction(transaction_id)
    return {"message": "Transaction deleted successfully", "deleted_ids": deleted}


@router.post("/bulk-delete")
async def bulk_delete_transactions(request: BulkDeleteRequest, db: BudgetDatabase = Depends(get_db)):
    """Delete many transactions; linked partners survive unless include_linked is set"""
    if not request.ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No transaction ids provided"
        )
    deleted = db.bulk_delete(request.ids, include_linked=request.include_linked)
    return {"message": f"{deleted} transactions deleted", "deleted": deleted}


@router.post("/bulk-update")
async def bulk_update_transactions(request: BulkUpdateRequest, db: BudgetDatabase = Depends(get_db)):
    """Apply the same update to many transactions, one at a time"""
    update_data = request.updates.model_dump(exclude_unset=True)
    if not request.ids or not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No transaction ids or fields to update"
        )
    return db.bulk_update(request.ids, update_data)


@router.post("/bulk-import")
async def bulk_import_transactions(
    request: BulkImportRequest,
    importer: TransactionImporter = Depends(get_importer)
):
    """Import CSV rows into one account, flagging likely duplicates"""
    rows = [row.model_dump() for row in request.transactions]
    result = importer.bulk_import(rows, request.account_id)
    return result.to_dict()
