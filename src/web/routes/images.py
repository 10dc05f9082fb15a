from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from db.batch_store import BatchImageStore
from db.images_repo import ImageFilters
from web.deps import get_image_store

router = APIRouter(prefix="/api/images", tags=["images"])


@router.get("")
def list_images(
    page: int = Query(1, ge=1),
    page_size: int = Query(30, ge=1, le=500, alias="pageSize"),
    storage: Optional[str] = None,
    category_id: Optional[int] = Query(None, alias="categoryId"),
    sort_by: str = Query("created_at", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    store: BatchImageStore = Depends(get_image_store),
) -> Dict[str, Any]:
    result = store.paginate(
        page=page,
        page_size=page_size,
        filters=ImageFilters(storage=storage, category_id=category_id),
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return {"success": True, **result}


@router.get("/stats")
def image_stats(store: BatchImageStore = Depends(get_image_store)) -> Dict[str, Any]:
    return {"success": True, "stats": store.get_stats(), "byStorage": store.count_by_storage()}
