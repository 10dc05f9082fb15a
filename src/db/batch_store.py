"""Transactional batch operations over the images table.

Each public method checks one connection out of the pool through
``DbConn.session_scope`` and runs inside a single transaction: a failure
rolls the whole call back and the connection is released before the
exception reaches the caller. ``chunked_bulk_import`` is the one deliberate
exception: every chunk is its own transaction, so earlier chunks stay
committed when a later one fails.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Union

from db.db_conn import DbConn
from db.images_repo import (
    ImageFilters,
    ImagePatch,
    ImagesRepo,
    NewImage,
    SORT_ORDERS,
    SORTABLE_COLUMNS,
    UNSET,
)

logger = logging.getLogger(__name__)

RowLike = Union[NewImage, Mapping[str, Any]]


@dataclass
class ChunkOutcome:
    success: bool
    chunk: int
    total_chunks: int
    inserted_count: int = 0
    inserted_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "batch": self.chunk, "totalBatches": self.total_chunks}
        if self.success:
            out.update(insertedCount=self.inserted_count, insertedIds=list(self.inserted_ids))
        else:
            out["error"] = self.error
        return out


def _as_new_image(row: RowLike) -> NewImage:
    return row if isinstance(row, NewImage) else NewImage.from_mapping(row)


class BatchImageStore:
    """Batch insert/update/delete/select, pagination and aggregates."""

    def __init__(self, db: DbConn, repo: Optional[ImagesRepo] = None) -> None:
        self.db = db
        self.repo = repo or ImagesRepo()

    def batch_insert(self, rows: Sequence[RowLike]) -> List[int]:
        """Insert all rows in one statement; ids come back in input order.

        Any constraint violation rolls back every row and re-raises.
        """
        if not rows:
            return []
        items = [_as_new_image(r) for r in rows]
        try:
            with self.db.session_scope() as session:
                ids = self.repo.insert_many(session, items)
        except Exception as exc:
            logger.error("batch insert of %s rows rolled back: %s", len(items), exc)
            raise
        logger.info("batch insert ok: %s rows", len(ids))
        return ids

    def batch_update(self, patches: Sequence[ImagePatch]) -> int:
        """Apply sparse patches in one transaction; returns rows touched."""
        if not patches:
            return 0
        updated = 0
        try:
            with self.db.session_scope() as session:
                for patch in patches:
                    updated += self.repo.apply_patch(session, patch)
        except Exception as exc:
            logger.error("batch update of %s patches rolled back: %s", len(patches), exc)
            raise
        logger.info("batch update ok: %s rows", updated)
        return updated

    def batch_delete(self, paths: Sequence[str]) -> int:
        """Delete by path membership; missing keys are not an error."""
        if not paths:
            return 0
        with self.db.session_scope() as session:
            deleted = self.repo.delete_by_paths(session, paths)
        logger.info("batch delete: %s of %s requested", deleted, len(paths))
        return deleted

    def get_by_ids(self, ids: Sequence[int]) -> List[Dict[str, Any]]:
        """Newest first; the order of ``ids`` is not preserved."""
        if not ids:
            return []
        with self.db.session_scope() as session:
            return [img.to_dict() for img in self.repo.get_by_ids(session, ids)]

    def list_by_storage(self, storage: str) -> List[Dict[str, Any]]:
        with self.db.session_scope() as session:
            return [img.to_dict() for img in self.repo.list_by_storage(session, storage)]

    def export_rows(self) -> List[Dict[str, Any]]:
        with self.db.session_scope() as session:
            return [img.to_dict() for img in self.repo.list_all(session)]

    def paginate(
        self,
        page: int = 1,
        page_size: int = 30,
        filters: Optional[ImageFilters] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        """Return ``{data, pagination}``; count and rows share one transaction."""
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        if sort_by not in SORTABLE_COLUMNS:
            raise ValueError(f"Invalid sort column '{sort_by}'. Allowed: {SORTABLE_COLUMNS}")
        sort_order = sort_order.lower()
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"Invalid sort order '{sort_order}'. Allowed: {SORT_ORDERS}")

        filters = filters or ImageFilters()
        with self.db.session_scope() as session:
            total = self.repo.count(session, filters)
            rows = self.repo.page(
                session,
                filters,
                limit=page_size,
                offset=(page - 1) * page_size,
                sort_by=sort_by,
                sort_order=sort_order,
            )
            data = [img.to_dict() for img in rows]

        return {
            "data": data,
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "total": total,
                "totalPages": math.ceil(total / page_size),
            },
        }

    def chunked_bulk_import(self, rows: Sequence[RowLike], chunk_size: int = 100) -> Iterator[ChunkOutcome]:
        """Lazily insert ``rows`` chunk by chunk, yielding one outcome per chunk.

        A failed chunk is reported and skipped; it does not undo earlier
        chunks or stop later ones.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        total_chunks = math.ceil(len(rows) / chunk_size)
        for start in range(0, len(rows), chunk_size):
            chunk_no = start // chunk_size + 1
            chunk = rows[start:start + chunk_size]
            try:
                ids = self.batch_insert(chunk)
            except Exception as exc:
                yield ChunkOutcome(success=False, chunk=chunk_no, total_chunks=total_chunks, error=str(exc))
                continue
            yield ChunkOutcome(
                success=True,
                chunk=chunk_no,
                total_chunks=total_chunks,
                inserted_count=len(ids),
                inserted_ids=ids,
            )

    def bulk_import(
        self,
        rows: Sequence[RowLike],
        chunk_size: int = 100,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        total_records = len(rows)
        total_inserted = 0
        batches: List[Dict[str, Any]] = []
        for outcome in self.chunked_bulk_import(rows, chunk_size):
            batches.append(outcome.to_dict())
            total_inserted += outcome.inserted_count
            if on_progress:
                on_progress(
                    {
                        **outcome.to_dict(),
                        "totalInserted": total_inserted,
                        "totalRecords": total_records,
                        "progress": math.floor(total_inserted / total_records * 100) if total_records else 100,
                    }
                )
        return {
            "success": True,
            "totalInserted": total_inserted,
            "totalRecords": total_records,
            "batches": batches,
        }

    def update_storage_batch(self, ids: Sequence[int], storage: str, data_by_id: Mapping[int, Mapping[str, Any]]) -> int:
        """Move rows to another storage backend in one transaction."""
        patches = []
        for image_id in ids:
            data = data_by_id.get(image_id, {})
            patches.append(
                ImagePatch(
                    id=image_id,
                    storage=storage,
                    path=data.get("path", UNSET),
                    url=data.get("url", UNSET),
                    html_code=data.get("html_code", UNSET),
                    markdown_code=data.get("markdown_code", UNSET),
                )
            )
        return self.batch_update(patches)

    def count_by_storage(self) -> Dict[str, int]:
        with self.db.session_scope() as session:
            return self.repo.count_by_storage(session)

    def clean_orphans(self, exists: Callable[[str], bool]) -> int:
        """Delete local rows whose file is gone; returns the deleted count."""
        with self.db.session_scope() as session:
            local = self.repo.list_by_storage(session, "local")
            orphan_ids = [img.id for img in local if not exists(img.path)]
            if not orphan_ids:
                return 0
            deleted = self.repo.delete_by_ids(session, orphan_ids)
        logger.info("removed %s orphan image rows", deleted)
        return deleted

    def get_stats(self) -> Dict[str, Any]:
        with self.db.session_scope() as session:
            row = self.repo.aggregates(session)
            # aggregates over an empty table come back NULL
            return {
                "totalCount": int(row["total_count"] or 0),
                "totalSize": int(row["total_size"] or 0),
                "avgSize": float(row["avg_size"] or 0),
                "maxSize": int(row["max_size"] or 0),
                "minSize": int(row["min_size"] or 0),
                "storageTypes": int(row["storage_types"] or 0),
                "formatTypes": int(row["format_types"] or 0),
                "categoryCount": int(row["category_count"] or 0),
            }
