"""
Tags API endpoints
Manage the tag forest
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional

from ...database import BudgetDatabase, DEFAULT_TAG_COLOR
from .deps import get_db

router = APIRouter()


# Pydantic models
class TagCreate(BaseModel):
    name: str
    parent_id: Optional[int] = None
    color: str = DEFAULT_TAG_COLOR


class TagUpdate(BaseModel):
    name: Optional[str] = None
    parent_id: Optional[int] = None
    color: Optional[str] = None


class SyncColorsRequest(BaseModel):
    dry_run: bool = False


@router.get("/")
async def get_tags(db: BudgetDatabase = Depends(get_db)):
    """Get all tags as a flat list"""
    return db.get_tags()


@router.get("/tree")
async def get_tag_tree(db: BudgetDatabase = Depends(get_db)):
    """Get all tags nested under their parents"""
    return db.build_tag_tree(db.get_tags())


@router.post("/sync-colors")
async def sync_tag_colors(request: Optional[SyncColorsRequest] = None, db: BudgetDatabase = Depends(get_db)):
    """Recolour every child tag to its parent's colour"""
    dry_run = request.dry_run if request else False
    changes = db.sync_tag_colors(dry_run=dry_run)
    return {"updated": len(changes), "dry_run": dry_run, "changes": changes}


@router.get("/{tag_id}")
async def get_tag(tag_id: int, db: BudgetDatabase = Depends(get_db)):
    tag = db.get_tag(tag_id)
    if not tag:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tag not found"
        )
    return tag


@router.get("/{tag_id}/descendants")
async def get_tag_descendants(tag_id: int, db: BudgetDatabase = Depends(get_db)):
    """Get the ids of a tag and everything below it"""
    return {"tag_id": tag_id, "ids": sorted(db.get_descendant_ids(tag_id))}


@router.post("/")
async def create_tag(tag: TagCreate, db: BudgetDatabase = Depends(get_db)):
    """Create new tag"""
    return db.add_tag(tag.name, parent_id=tag.parent_id, color=tag.color)


@router.put("/{tag_id}")
async def update_tag(tag_id: int, tag: TagUpdate, db: BudgetDatabase = Depends(get_db)):
    """Update tag name, parent or colour"""
    update_data = tag.model_dump(exclude_unset=True)
    if not update_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update"
        )
    return db.update_tag(tag_id, update_data)


@router.delete("/{tag_id}")
async def delete_tag(tag_id: int, db: BudgetDatabase = Depends(get_db)):
    """Delete tag; its children move up to its parent"""
    result = db.delete_tag(tag_id)
    return {"message": "Tag deleted successfully", **result}
