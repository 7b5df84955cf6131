from fastapi import APIRouter, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from pixlmint.core.errors import ChainError, NotFoundError

router = APIRouter(tags=["Tokens"])


@router.get("/verify/{token_id}")
async def verify_token(token_id: int, request: Request):
    """
    Current owner and token URI, read straight from the NFT contract.

    **Possible errors:**
    - 404: Token does not exist
    - 503: Chain RPC unavailable
    """
    settings = request.app.state.settings
    chain = request.app.state.deps.chain
    try:
        owner = await run_in_threadpool(chain.token_owner, token_id)
        token_uri = await run_in_threadpool(chain.token_uri, token_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Token not found")
    except ChainError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    contract = settings.nft_contract_address
    return {
        "tokenId": str(token_id),
        "owner": owner,
        "tokenURI": token_uri,
        "contract": contract,
        "explorer": f"{settings.explorer_url}/token/{contract}?a={token_id}",
    }
