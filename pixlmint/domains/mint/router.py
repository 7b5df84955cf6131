import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from pixlmint.core.config import Settings
from pixlmint.core.errors import MintError, MintPipelineError
from pixlmint.shared.utils.response import error_response

from .schemas import BlockchainOut, IpfsOut, MintErrorOut, MintOut, MintRequest
from .services import MintOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Minting"])


def get_orchestrator(request: Request) -> MintOrchestrator:
    return request.app.state.orchestrator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.post(
    "/mint",
    response_model=MintOut,
    responses={
        400: {"model": MintErrorOut},
        404: {"model": MintErrorOut},
        409: {"model": MintErrorOut},
        500: {"model": MintErrorOut},
        502: {"model": MintErrorOut},
        503: {"model": MintErrorOut},
        504: {"model": MintErrorOut},
    },
)
async def mint(
    body: MintRequest,
    orchestrator: MintOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """
    Mint a finished masterpiece as an NFT.

    **Possible errors:**
    - 400: Missing fields or an invalid/insufficient payment
    - 404: Image not found in storage
    - 409: Masterpiece already minted or being minted, payment already used
    - 502: Image fetch, IPFS pinning or transaction submission failed
    - 500: The mint transaction reverted
    - 504: The transaction was sent but not confirmed in time

    Errors raised after pinning include the IPFS URLs under ``ipfs``.
    """
    outcome = await orchestrator.mint(body)
    result = outcome.result
    return MintOut(
        artifactId=body.artifact_id.strip(),
        transactionId=result.transaction_id,
        tokenId=result.token_id,
        tokenURI=result.token_uri,
        confirmations=result.confirmations,
        ipfs=IpfsOut(**outcome.pinned.to_response()),
        blockchain=BlockchainOut(
            chain=settings.chain_name,
            contract=settings.nft_contract_address,
            explorer=f"{settings.explorer_url}/tx/{result.transaction_id}",
        ),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


async def mint_error_handler(request: Request, exc: MintPipelineError) -> JSONResponse:
    body = MintErrorOut(error=exc.code, message=exc.message)
    if exc.pinned is not None:
        body.ipfs = IpfsOut(**exc.pinned.to_response())
    if isinstance(exc, MintError) and exc.transaction_id:
        body.transactionId = exc.transaction_id
    return error_response(exc.status_code, body)
