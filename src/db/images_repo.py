from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.orm import Session

from db.poco.image import Image


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()

SORTABLE_COLUMNS: Sequence[str] = ("created_at", "upload_time", "file_size", "filename", "id")
SORT_ORDERS: Sequence[str] = ("asc", "desc")


@dataclass(frozen=True)
class NewImage:
    filename: str
    path: str
    storage: str = "local"
    format: Optional[str] = None
    file_size: Optional[int] = None
    url: Optional[str] = None
    html_code: Optional[str] = None
    markdown_code: Optional[str] = None
    category_id: Optional[int] = None
    upload_time: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "NewImage":
        """Accept snake_case or camelCase keys (backup files use either)."""
        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data and data[key] is not None:
                    return data[key]
            return None

        upload_time = pick("upload_time", "uploadTime")
        if isinstance(upload_time, str):
            upload_time = datetime.fromisoformat(upload_time)
        return cls(
            filename=pick("filename"),
            path=pick("path"),
            storage=pick("storage") or "local",
            format=pick("format"),
            file_size=pick("file_size", "fileSize"),
            url=pick("url"),
            html_code=pick("html_code", "htmlCode"),
            markdown_code=pick("markdown_code", "markdownCode"),
            category_id=pick("category_id", "categoryId"),
            upload_time=upload_time,
        )

    def to_row(self) -> Dict[str, Any]:
        row = {f.name: getattr(self, f.name) for f in fields(self)}
        if row["upload_time"] is None:
            row["upload_time"] = datetime.now(tz=timezone.utc)
        return row


@dataclass(frozen=True)
class ImagePatch:
    """Sparse update for one image row; only fields that are set are written."""

    id: int
    filename: Any = UNSET
    path: Any = UNSET
    storage: Any = UNSET
    format: Any = UNSET
    file_size: Any = UNSET
    url: Any = UNSET
    html_code: Any = UNSET
    markdown_code: Any = UNSET
    category_id: Any = UNSET

    def values(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "id" and getattr(self, f.name) is not UNSET
        }


@dataclass(frozen=True)
class ImageFilters:
    storage: Optional[str] = None
    category_id: Optional[int] = None

    def clauses(self) -> List[Any]:
        out: List[Any] = []
        if self.storage:
            out.append(Image.storage == self.storage)
        if self.category_id is not None:
            out.append(Image.category_id == self.category_id)
        return out


class ImagesRepo:
    """Statement builders for the images table; callers own the transaction."""

    def insert_many(self, session: Session, rows: Sequence[NewImage]) -> List[int]:
        payload = [r.to_row() for r in rows]
        if not payload:
            return []
        # insertmanyvalues batches the rows into multi-row VALUES and keeps
        # RETURNING aligned with the parameter order
        stmt = insert(Image).returning(Image.id, sort_by_parameter_order=True)
        result = session.execute(stmt, payload)
        return [int(row[0]) for row in result.all()]

    def apply_patch(self, session: Session, patch: ImagePatch) -> int:
        values = patch.values()
        if not values:
            return 0
        result = session.execute(update(Image).where(Image.id == patch.id).values(**values))
        return result.rowcount or 0

    def delete_by_paths(self, session: Session, paths: Sequence[str]) -> int:
        result = session.execute(delete(Image).where(Image.path.in_(list(paths))))
        return result.rowcount or 0

    def delete_by_ids(self, session: Session, ids: Sequence[int]) -> int:
        result = session.execute(delete(Image).where(Image.id.in_(list(ids))))
        return result.rowcount or 0

    def get_by_ids(self, session: Session, ids: Sequence[int]) -> List[Image]:
        stmt = select(Image).where(Image.id.in_(list(ids))).order_by(Image.created_at.desc(), Image.id.desc())
        return list(session.scalars(stmt).all())

    def list_by_storage(self, session: Session, storage: str) -> List[Image]:
        stmt = select(Image).where(Image.storage == storage).order_by(Image.id.asc())
        return list(session.scalars(stmt).all())

    def list_all(self, session: Session) -> List[Image]:
        return list(session.scalars(select(Image).order_by(Image.id.asc())).all())

    def count(self, session: Session, filters: ImageFilters) -> int:
        stmt = select(func.count()).select_from(Image).where(*filters.clauses())
        return int(session.execute(stmt).scalar_one())

    def page(
        self,
        session: Session,
        filters: ImageFilters,
        limit: int,
        offset: int,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> List[Image]:
        column = getattr(Image, sort_by)
        order = column.asc() if sort_order == "asc" else column.desc()
        stmt = select(Image).where(*filters.clauses()).order_by(order, Image.id.asc()).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def count_by_storage(self, session: Session) -> Dict[str, int]:
        stmt = select(Image.storage, func.count()).group_by(Image.storage)
        return {storage: int(count) for storage, count in session.execute(stmt).all()}

    def aggregates(self, session: Session) -> Mapping[str, Any]:
        stmt = select(
            func.count().label("total_count"),
            func.sum(Image.file_size).label("total_size"),
            func.avg(Image.file_size).label("avg_size"),
            func.max(Image.file_size).label("max_size"),
            func.min(Image.file_size).label("min_size"),
            func.count(func.distinct(Image.storage)).label("storage_types"),
            func.count(func.distinct(Image.format)).label("format_types"),
            func.count(func.distinct(Image.category_id)).label("category_count"),
        ).select_from(Image)
        return session.execute(stmt).mappings().one()
