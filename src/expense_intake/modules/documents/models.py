from __future__ import annotations

import enum
import uuid

from sqlalchemy import JSON, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from expense_intake.core.models import AccountScoped, Base, Timestamped, UUIDPrimaryKey


class ReceiptFileStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    ANALYZED = "ANALYZED"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"


class ReceiptFile(UUIDPrimaryKey, Timestamped, AccountScoped, Base):
    __tablename__ = "receipt_files"

    uploader_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)

    filename: Mapped[str] = mapped_column(String(512))
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer)
    # Dedup key: sha256 of the exact uploaded bytes.
    sha256: Mapped[str] = mapped_column(String(64), index=True)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)

    status: Mapped[ReceiptFileStatus] = mapped_column(
        Enum(ReceiptFileStatus, native_enum=False), index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_json: Mapped[dict] = mapped_column(JSON, default=dict)
