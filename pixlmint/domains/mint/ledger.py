import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pixlmint.core.errors import (
    AlreadyMintedError,
    ConfirmationTimeoutError,
    MintError,
    MintInProgressError,
    MintPipelineError,
    PaymentAlreadyUsedError,
    PaymentError,
)

from .models import MintRecord, MintStatus, utcnow
from .schemas import MintOutcome

logger = logging.getLogger(__name__)


class MintLedger:
    """
    Per-artifact exclusivity for the mint pipeline.

    ``reserve`` must succeed before any pipeline stage runs; exactly one caller
    holds an artifact at a time. The reservation ends as ``completed`` or
    ``failed``. A reservation left ``in_progress`` by a crashed worker can be
    taken over once it is older than ``reservation_ttl`` seconds, unless it
    already recorded a sent transaction.
    """

    def __init__(self, session_factory: Callable[[], Session], reservation_ttl: int = 900):
        self._session_factory = session_factory
        self.reservation_ttl = reservation_ttl

    def get(self, artifact_id: str) -> Optional[MintRecord]:
        with self._session_factory() as db:
            return db.query(MintRecord).filter(MintRecord.artifact_id == artifact_id).first()

    def reserve(self, artifact_id: str, owner_address: str, payment_tx_id: Optional[str] = None) -> None:
        with self._session_factory() as db:
            if payment_tx_id:
                spent = (
                    db.query(MintRecord)
                    .filter(MintRecord.payment_tx_id == payment_tx_id)
                    .filter(MintRecord.artifact_id != artifact_id)
                    .first()
                )
                if spent:
                    raise PaymentAlreadyUsedError(
                        f"Payment {payment_tx_id} already funded masterpiece {spent.artifact_id}"
                    )

            db.add(
                MintRecord(
                    artifact_id=artifact_id,
                    owner_address=owner_address,
                    payment_tx_id=payment_tx_id,
                    status=MintStatus.IN_PROGRESS.value,
                )
            )
            try:
                db.commit()
                logger.info(f"Reserved {artifact_id} for minting")
                return
            except IntegrityError:
                db.rollback()

            existing = db.query(MintRecord).filter(MintRecord.artifact_id == artifact_id).first()
            if existing is None:
                # the unique violation was on payment_tx_id
                raise PaymentAlreadyUsedError(f"Payment {payment_tx_id} already funded another mint")
            if existing.status == MintStatus.COMPLETED.value:
                raise AlreadyMintedError(
                    f"Masterpiece {artifact_id} was already minted in {existing.transaction_id}"
                )

            stale_before = utcnow() - timedelta(seconds=self.reservation_ttl)
            takeover = (
                update(MintRecord)
                .where(MintRecord.artifact_id == artifact_id)
                .where(
                    or_(
                        MintRecord.status == MintStatus.FAILED.value,
                        and_(
                            MintRecord.status == MintStatus.IN_PROGRESS.value,
                            MintRecord.updated_at < stale_before,
                            # a sent transaction may still land
                            MintRecord.transaction_id.is_(None),
                        ),
                    )
                )
                .values(
                    status=MintStatus.IN_PROGRESS.value,
                    owner_address=owner_address,
                    payment_tx_id=payment_tx_id,
                    error=None,
                    transaction_id=None,
                    updated_at=utcnow(),
                )
            )
            try:
                res = db.execute(takeover)
                db.commit()
            except IntegrityError:
                db.rollback()
                raise PaymentAlreadyUsedError(f"Payment {payment_tx_id} already funded another mint")
            if res.rowcount != 1:
                if existing.status == MintStatus.IN_PROGRESS.value and existing.transaction_id:
                    raise MintInProgressError(
                        f"Masterpiece {artifact_id} has unconfirmed transaction {existing.transaction_id}"
                    )
                raise MintInProgressError(f"Masterpiece {artifact_id} is already being minted")
            logger.info(f"Re-reserved {artifact_id} after a previous attempt")

    def complete(self, artifact_id: str, outcome: MintOutcome) -> None:
        result, pinned = outcome.result, outcome.pinned
        self._update(
            artifact_id,
            status=MintStatus.COMPLETED.value,
            transaction_id=result.transaction_id,
            token_id=result.token_id,
            token_uri=result.token_uri,
            image_cid=pinned.asset.content_id,
            metadata_cid=pinned.metadata.content_id if pinned.metadata else None,
            error=None,
        )

    def fail(self, artifact_id: str, error: MintPipelineError) -> None:
        values = {"status": MintStatus.FAILED.value, "error": f"{error.code}: {error.message}"}
        if isinstance(error, ConfirmationTimeoutError):
            # the transaction may still land; hold the reservation until it expires
            values["status"] = MintStatus.IN_PROGRESS.value
        if isinstance(error, PaymentError):
            # a rejected payment does not claim the transaction
            values["payment_tx_id"] = None
        if isinstance(error, MintError) and error.transaction_id:
            values["transaction_id"] = error.transaction_id
        if error.pinned is not None:
            values["image_cid"] = error.pinned.asset.content_id
            if error.pinned.metadata:
                values["metadata_cid"] = error.pinned.metadata.content_id
        self._update(artifact_id, **values)

    def _update(self, artifact_id: str, **values) -> None:
        with self._session_factory() as db:
            db.execute(
                update(MintRecord)
                .where(MintRecord.artifact_id == artifact_id)
                .values(updated_at=utcnow(), **values)
            )
            db.commit()
