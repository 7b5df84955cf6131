# pixlmint/shared/pinata_client.py
import json
import logging
from typing import Any, Dict, Optional

import httpx

from pixlmint.core.errors import PinningError
from pixlmint.domains.mint.schemas import PinnedContent

logger = logging.getLogger(__name__)

PINATA_BASE = "https://api.pinata.cloud/pinning"


class PinataClient:
    """Pins masterpieces and their metadata to IPFS through Pinata.

    Each call is a single upload. Failures surface as ``PinningError`` and are
    never retried here: pins are content-addressed, so the caller can safely
    retry with the same bytes.
    """

    def __init__(
        self,
        jwt: str,
        gateway: str = "https://gateway.pinata.cloud/ipfs",
        base_url: str = PINATA_BASE,
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._jwt = jwt
        self.gateway = gateway.rstrip("/")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "PinataClient":
        return cls(
            jwt=settings.pinata_jwt,
            gateway=settings.pinata_gateway,
            base_url=settings.pinata_api_url,
            timeout=settings.pinning_timeout_seconds,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._jwt}"}

    def gateway_url(self, cid: str) -> str:
        return f"{self.gateway}/{cid}"

    async def _post(self, path: str, **kwargs) -> str:
        url = f"{self.base_url}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, **kwargs)
                resp.raise_for_status()
                body = resp.json()  # { IpfsHash, PinSize, Timestamp }
        except httpx.HTTPStatusError as e:
            raise PinningError(f"Pinata {path} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise PinningError(f"Pinata {path} failed: {e!r}") from e
        except ValueError as e:
            raise PinningError(f"Pinata {path} returned a non-JSON body") from e

        cid = body.get("IpfsHash") if isinstance(body, dict) else None
        if not cid:
            raise PinningError(f"Pinata {path} response has no IpfsHash")
        return cid

    async def pin_file_to_ipfs(
        self,
        file_bytes: bytes,
        filename: str,
        media_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        files = {"file": (filename, file_bytes, media_type)}
        if metadata:
            files["pinataMetadata"] = (None, json.dumps(metadata), "application/json")
        logger.info(f"Pinning file to IPFS: {filename} ({len(file_bytes)} bytes)")
        return await self._post("pinFileToIPFS", headers=self._auth_headers(), files=files)

    async def pin_json_to_ipfs(self, json_obj: Dict[str, Any], name: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"pinataContent": json_obj}
        if name:
            payload["pinataMetadata"] = {"name": name}
        logger.info(f"Pinning JSON to IPFS: {name or 'unnamed'}")
        return await self._post("pinJSONToIPFS", headers=self._auth_headers(), json=payload)

    async def pin_asset(self, data: bytes, filename: str, media_type: str) -> PinnedContent:
        cid = await self.pin_file_to_ipfs(data, filename, media_type, metadata={"name": filename})
        return PinnedContent(content_id=cid, gateway_url=self.gateway_url(cid), media_type=media_type)

    async def pin_metadata(self, doc: Dict[str, Any], name: Optional[str] = None) -> PinnedContent:
        cid = await self.pin_json_to_ipfs(doc, name=name)
        return PinnedContent(
            content_id=cid, gateway_url=self.gateway_url(cid), media_type="application/json"
        )
