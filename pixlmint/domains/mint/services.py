import asyncio
import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, List, Optional, Set, Tuple

from web3 import Web3

from pixlmint.core.errors import (
    ChainError,
    ChainUnavailableError,
    InternalError,
    MintPipelineError,
    PaymentNotFoundError,
    ValidationError,
)
from pixlmint.shared.chain import ChainReader
from pixlmint.shared.database.connection import SessionLocal
from pixlmint.shared.pinata_client import PinataClient
from pixlmint.shared.storage import build_object_store

from .assets import AssetResolver, default_asset_key, sniff_media_type
from .ledger import MintLedger
from .minter import ChainMinter, build_minter
from .payment import PaymentVerifier
from .reporter import ResultReporter
from .schemas import (
    MintOutcome,
    MintRequest,
    MintResult,
    PaymentProof,
    PinnedBundle,
    PinnedContent,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MintPolicy:
    required_amount: int
    treasury_address: str
    allow_free_mint: bool
    payment_token_symbol: str = "DEGEN"
    collection_name: str = "PIXLMIXR"
    chain_name: str = "Base"


@dataclass
class MintDependencies:
    """Process-wide handles, built once at startup and shared by reference"""

    chain: ChainReader
    payment_verifier: Optional[PaymentVerifier]
    assets: AssetResolver
    pinner: PinataClient
    minter: ChainMinter
    reporter: ResultReporter
    ledger: MintLedger
    policy: MintPolicy


def build_dependencies(settings, session_factory=SessionLocal) -> MintDependencies:
    chain = ChainReader.from_settings(settings)
    verifier = None
    if settings.treasury_address:
        verifier = PaymentVerifier(chain, settings.payment_token_address)
    else:
        logger.warning("TREASURY_WALLET_ADDRESS not set; paid mints will be rejected")

    return MintDependencies(
        chain=chain,
        payment_verifier=verifier,
        assets=AssetResolver(build_object_store(settings), timeout=settings.http_timeout_seconds),
        pinner=PinataClient.from_settings(settings),
        minter=build_minter(settings, chain),
        reporter=ResultReporter(
            settings.persistence_api_url,
            settings.persistence_api_token,
            timeout=settings.http_timeout_seconds,
        ),
        ledger=MintLedger(session_factory, reservation_ttl=settings.reservation_ttl_seconds),
        policy=MintPolicy(
            required_amount=settings.required_payment_amount,
            treasury_address=settings.treasury_address,
            allow_free_mint=settings.allow_free_mint,
            payment_token_symbol=settings.payment_token_symbol,
            collection_name=settings.collection_name,
            chain_name=settings.chain_name,
        ),
    )


def build_metadata(
    request: MintRequest,
    image_url: str,
    policy: MintPolicy,
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """ERC-721 metadata document for a masterpiece"""
    meta = request.descriptive_metadata
    created_at = created_at or datetime.now(timezone.utc)

    attributes: List[Dict[str, Any]] = [
        {"trait_type": "Artist", "value": request.owner_address},
        {"trait_type": "Creation Date", "value": created_at.isoformat()},
        {"trait_type": "High Resolution", "value": "Yes" if meta.high_res else "No"},
    ]
    attributes += [{"trait_type": "Style", "value": style} for style in meta.styles]
    for key, value in (meta.model_extra or {}).items():
        attributes.append({"trait_type": key, "value": value})

    return {
        "name": meta.name or f"{policy.collection_name} Masterpiece #{request.artifact_id[:8]}",
        "description": meta.description
        or f"AI-generated art masterpiece created with {policy.collection_name}",
        "image": image_url,
        "attributes": attributes,
        "properties": {
            "masterpieceId": request.artifact_id,
            "createdWith": policy.collection_name,
            "blockchain": policy.chain_name,
            "paymentToken": policy.payment_token_symbol if request.payment_tx_id else "FREE",
        },
    }


class MintOrchestrator:
    """
    Runs one mint request through the pipeline:

    1) reserve the masterpiece in the ledger
    2) verify the payment (vacuous for a permitted free mint)
    3) load the image from storage or its URL
    4) pin the image, then the metadata that embeds the image URL
    5) mint the token and wait for confirmations
    6) record the result and notify the database service in the background

    Each stage needs the previous stage's output, so they run strictly in
    order. Failures after pinning carry the pinned identifiers.
    """

    def __init__(self, deps: MintDependencies):
        self.deps = deps
        self._reports: Set[asyncio.Task] = set()

    async def _run_blocking(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    @staticmethod
    def validate(request: MintRequest) -> Tuple[str, str]:
        artifact_id = (request.artifact_id or "").strip()
        owner_address = (request.owner_address or "").strip()
        missing = [
            name
            for name, value in (("artifactId", artifact_id), ("ownerAddress", owner_address))
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if not Web3.is_address(owner_address):
            raise ValidationError(f"Invalid owner address: {owner_address}")
        return artifact_id, owner_address

    async def mint(self, request: MintRequest) -> MintOutcome:
        artifact_id, owner_address = self.validate(request)
        request = request.model_copy(update={"artifact_id": artifact_id, "owner_address": owner_address})
        logger.info(f"Processing mint for masterpiece {artifact_id} to wallet {owner_address}")

        ledger = self.deps.ledger
        await self._run_blocking(ledger.reserve, artifact_id, owner_address, request.payment_tx_id)
        try:
            outcome = await self._run_pipeline(request)
        except MintPipelineError as e:
            logger.error(f"Mint of {artifact_id} failed: {e.code}: {e.message}")
            await self._record(ledger.fail, artifact_id, e)
            raise

        # the token is on-chain from here on
        await self._record(ledger.complete, artifact_id, outcome)
        logger.info(
            f"NFT minted successfully! TX: {outcome.result.transaction_id}, "
            f"Token ID: {outcome.result.token_id}"
        )
        self._schedule_report(artifact_id, outcome)
        return outcome

    async def _record(self, write, artifact_id: str, value) -> None:
        try:
            await self._run_blocking(write, artifact_id, value)
        except Exception:
            logger.exception(f"Ledger {write.__name__} for {artifact_id} failed; row needs reconciliation")

    async def _run_pipeline(self, request: MintRequest) -> MintOutcome:
        pinned: Optional[PinnedBundle] = None
        try:
            proof = await self._verify_payment(request)
            data = await self._resolve_asset(request)
            asset = await self._pin_asset(request, data)
            pinned = PinnedBundle(asset=asset)
            metadata = await self._pin_metadata(request, asset)
            pinned = PinnedBundle(asset=asset, metadata=metadata)
            result = await self._mint_token(request, metadata)
        except MintPipelineError as e:
            if e.pinned is None:
                e.pinned = pinned
            raise
        except Exception as e:
            logger.exception(f"Unexpected error minting {request.artifact_id}")
            raise InternalError(f"Minting failed: {e}", pinned=pinned) from e
        return MintOutcome(result=result, pinned=pinned, payment=proof)

    async def _verify_payment(self, request: MintRequest) -> Optional[PaymentProof]:
        policy = self.deps.policy
        if not request.payment_tx_id:
            if policy.allow_free_mint:
                logger.info("Step 1: free mint, no payment to verify")
                return None
            raise PaymentNotFoundError("Payment transaction required")

        verifier = self.deps.payment_verifier
        if verifier is None:
            raise PaymentNotFoundError("Payment verification is not configured")

        logger.info(f"Step 1: verifying {policy.payment_token_symbol} payment {request.payment_tx_id}")
        try:
            return await self._run_blocking(
                verifier.verify,
                request.payment_tx_id,
                policy.required_amount,
                policy.treasury_address,
            )
        except ChainError as e:
            raise ChainUnavailableError(f"Could not verify payment: {e}") from e

    async def _resolve_asset(self, request: MintRequest) -> bytes:
        ref = request.source_image_ref or default_asset_key(request.owner_address, request.artifact_id)
        logger.info(f"Step 2: resolving image {ref}")
        return await self.deps.assets.resolve(ref)

    async def _pin_asset(self, request: MintRequest, data: bytes) -> PinnedContent:
        media_type = sniff_media_type(data)
        extension = mimetypes.guess_extension(media_type) or ""
        logger.info("Step 3: uploading image to IPFS")
        asset = await self.deps.pinner.pin_asset(data, f"{request.artifact_id}{extension}", media_type)
        logger.info(f"Image uploaded to IPFS: {asset.gateway_url}")
        return asset

    async def _pin_metadata(self, request: MintRequest, asset: PinnedContent) -> PinnedContent:
        doc = build_metadata(request, asset.gateway_url, self.deps.policy)
        metadata = await self.deps.pinner.pin_metadata(doc, name=f"{request.artifact_id}-metadata.json")
        logger.info(f"Metadata uploaded to IPFS: {metadata.gateway_url}")
        return metadata

    async def _mint_token(self, request: MintRequest, metadata: PinnedContent) -> MintResult:
        logger.info(f"Step 4: minting NFT on {self.deps.policy.chain_name}")
        return await self.deps.minter.mint(request.owner_address, metadata.gateway_url)

    def _schedule_report(self, artifact_id: str, outcome: MintOutcome) -> None:
        if not self.deps.reporter.enabled:
            return
        task = asyncio.create_task(self.deps.reporter.report(artifact_id, outcome))
        self._reports.add(task)
        task.add_done_callback(self._reports.discard)

    async def wait_for_reports(self) -> None:
        """Let in-flight database updates finish (used on shutdown)"""
        if self._reports:
            await asyncio.gather(*self._reports, return_exceptions=True)
