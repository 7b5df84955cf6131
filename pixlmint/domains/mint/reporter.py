import logging
from typing import Optional

import httpx

from pixlmint.core.errors import ReportingError

from .schemas import MintOutcome

logger = logging.getLogger(__name__)


class ResultReporter:
    """Tells the record-keeping service about a finished mint. Best effort."""

    def __init__(
        self,
        api_url: str,
        api_token: str = "",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._api_token = api_token
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    async def send(self, artifact_id: str, outcome: MintOutcome) -> None:
        """Post the outcome; raises ReportingError on any failure"""
        pinned = outcome.pinned
        body = {
            "masterpieceId": artifact_id,
            "mintTxHash": outcome.result.transaction_id,
            "tokenId": outcome.result.token_id,
            "tokenURI": outcome.result.token_uri,
            "ipfsImageHash": pinned.asset.content_id,
            "ipfsMetadataHash": pinned.metadata.content_id if pinned.metadata else None,
        }
        headers = {"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.api_url}/update-mint", json=body, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ReportingError(f"update-mint for {artifact_id} failed: {e!r}") from e

    async def report(self, artifact_id: str, outcome: MintOutcome) -> bool:
        """Like ``send`` but never raises. Returns whether the report landed."""
        if not self.enabled:
            return False
        try:
            await self.send(artifact_id, outcome)
        except ReportingError as e:
            logger.warning(f"Database update error (mint unaffected): {e}")
            return False
        logger.info(f"Database updated for {artifact_id}")
        return True
