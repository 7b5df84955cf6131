import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from pixlmint.shared.database.connection import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MintStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MintRecord(Base):
    __tablename__ = "mint_records"

    id = Column(Integer, primary_key=True, index=True)
    artifact_id = Column(String(128), nullable=False, unique=True, index=True)
    owner_address = Column(String(128), nullable=False)
    payment_tx_id = Column(String(128), nullable=True, unique=True)  # one payment funds one mint
    status = Column(String(32), nullable=False, default=MintStatus.IN_PROGRESS.value)
    transaction_id = Column(String(128), nullable=True)
    token_id = Column(String(128), nullable=True)
    token_uri = Column(String(500), nullable=True)
    image_cid = Column(String(128), nullable=True)
    metadata_cid = Column(String(128), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
