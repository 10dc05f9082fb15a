from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, String, Text, func

from db.base import Base


class Image(Base):
    __tablename__ = "images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    filename = Column(String(255), nullable=False)
    path = Column(String(512), nullable=False, unique=True)
    upload_time = Column(DateTime(timezone=True), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    storage = Column(String(20), nullable=False, default="local")  # local | r2 | ...
    format = Column(String(20), nullable=True)
    url = Column(Text, nullable=True)
    html_code = Column(Text, nullable=True)
    markdown_code = Column(Text, nullable=True)
    category_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_images_storage", "storage"),
        Index("ix_images_category_created", "category_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "path": self.path,
            "upload_time": self.upload_time,
            "file_size": self.file_size,
            "storage": self.storage,
            "format": self.format,
            "url": self.url,
            "html_code": self.html_code,
            "markdown_code": self.markdown_code,
            "category_id": self.category_id,
            "created_at": self.created_at,
        }
