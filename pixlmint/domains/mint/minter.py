import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError

from pixlmint.core.errors import (
    ConfirmationTimeoutError,
    MintExecutionError,
    MintSubmissionError,
)
from pixlmint.shared.chain import NFT_CONTRACT_ABI, ChainReader, logs_from, topic_to_int

from .schemas import UNKNOWN_TOKEN_ID, MintResult

logger = logging.getLogger(__name__)

# One lock per signing address: nonce read + send must not interleave.
_submission_locks: Dict[str, threading.Lock] = {}
_submission_locks_guard = threading.Lock()


def submission_lock(address: str) -> threading.Lock:
    with _submission_locks_guard:
        return _submission_locks.setdefault(address.lower(), threading.Lock())


def gas_limit_with_margin(estimate: int, margin_percent: int = 20) -> int:
    """ceil(estimate * (1 + margin)), in integer arithmetic"""
    return -(-estimate * (100 + margin_percent) // 100)


def extract_token_id(receipt: Any, contract_address: str) -> str:
    for log in logs_from(receipt, contract_address):
        topics = log["topics"]
        if len(topics) > 3:
            return str(topic_to_int(topics[3]))
    return UNKNOWN_TOKEN_ID


class ChainMinter(ABC):
    """Mints one token to ``owner_address`` pointing at ``token_uri``"""

    @abstractmethod
    async def mint(self, owner_address: str, token_uri: str) -> MintResult:
        ...


class DirectMinter(ChainMinter):
    """Signs and submits ``mintNFT`` with the platform key via web3.py"""

    def __init__(
        self,
        chain: ChainReader,
        *,
        private_key: str,
        contract_address: str,
        chain_id: int,
        min_confirmations: int = 2,
        gas_margin_percent: int = 20,
        confirmation_timeout: float = 180,
        poll_interval: float = 2,
    ):
        self.chain = chain
        self.account = Account.from_key(private_key)
        self.contract_address = contract_address
        self.chain_id = chain_id
        self.min_confirmations = min_confirmations
        self.gas_margin_percent = gas_margin_percent
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.contract = chain.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=NFT_CONTRACT_ABI
        )

    async def mint(self, owner_address: str, token_uri: str) -> MintResult:
        loop = asyncio.get_running_loop()
        tx_hash = await loop.run_in_executor(None, self.submit, owner_address, token_uri)
        logger.info(f"Transaction sent: {tx_hash}")

        receipt, confirmations = await self.chain.wait_for_confirmations(
            tx_hash,
            self.min_confirmations,
            timeout=self.confirmation_timeout,
            poll_interval=self.poll_interval,
        )
        if receipt.get("status") != 1:
            raise MintExecutionError(f"Mint transaction {tx_hash} reverted", transaction_id=tx_hash)

        token_id = extract_token_id(receipt, self.contract_address)
        if token_id == UNKNOWN_TOKEN_ID:
            logger.warning(f"No mint event from {self.contract_address} in {tx_hash}")
        return MintResult(
            transaction_id=tx_hash,
            token_id=token_id,
            token_uri=token_uri,
            confirmations=confirmations,
        )

    def estimate_gas(self, call) -> int:
        try:
            return int(call.estimate_gas({"from": self.account.address}))
        except ContractLogicError as e:
            raise MintExecutionError(f"Mint call would revert: {e}") from e
        except Exception as e:
            raise MintSubmissionError(f"Gas estimation failed: {e}") from e

    def fee_fields(self) -> Dict[str, int]:
        """EIP-1559 fees the way ethers' getFeeData derives them"""
        w3 = self.chain.w3
        try:
            base_fee = w3.eth.get_block("latest").get("baseFeePerGas")
            if base_fee is None:
                return {"gasPrice": int(w3.eth.gas_price)}
            priority = int(w3.eth.max_priority_fee)
        except Exception as e:
            raise MintSubmissionError(f"Could not read fee data: {e}") from e
        return {"maxFeePerGas": 2 * int(base_fee) + priority, "maxPriorityFeePerGas": priority}

    def submit(self, owner_address: str, token_uri: str) -> str:
        call = self.contract.functions.mintNFT(Web3.to_checksum_address(owner_address), token_uri)
        estimated = self.estimate_gas(call)
        gas_limit = gas_limit_with_margin(estimated, self.gas_margin_percent)
        fees = self.fee_fields()
        logger.info(f"Gas estimate {estimated}, limit {gas_limit}, fees {fees}")

        w3 = self.chain.w3
        with submission_lock(self.account.address):
            try:
                nonce = w3.eth.get_transaction_count(self.account.address, "pending")
                tx = call.build_transaction(
                    {
                        "from": self.account.address,
                        "nonce": nonce,
                        "gas": gas_limit,
                        "chainId": self.chain_id,
                        **fees,
                    }
                )
                signed = self.account.sign_transaction(tx)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                raise MintSubmissionError(f"Submitting mint transaction failed: {e}") from e
        return Web3.to_hex(tx_hash)


class ManagedMinter(ChainMinter):
    """
    Mints through a managed minting API (Crossmint) that owns gas and nonce
    management. The returned transaction is still checked on-chain for the
    confirmation threshold.
    """

    def __init__(
        self,
        chain: ChainReader,
        *,
        api_url: str,
        api_key: str,
        collection_id: str,
        chain_slug: str = "base",
        min_confirmations: int = 2,
        confirmation_timeout: float = 180,
        poll_interval: float = 3,
        http_timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chain = chain
        self.api_url = api_url.rstrip("/")
        self._api_key = api_key
        self.collection_id = collection_id
        self.chain_slug = chain_slug
        self.min_confirmations = min_confirmations
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.http_timeout = http_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url,
            timeout=self.http_timeout,
            transport=self._transport,
            headers={"X-API-KEY": self._api_key, "Content-Type": "application/json"},
        )

    async def _create(self, client: httpx.AsyncClient, owner_address: str, token_uri: str) -> str:
        payload = {
            "recipient": f"{self.chain_slug}:{owner_address}",
            "metadata": token_uri,
            "reuploadLinkedFiles": False,
        }
        try:
            resp = await client.post(f"/collections/{self.collection_id}/nfts", json=payload)
            resp.raise_for_status()
            nft_id = resp.json().get("id")
        except httpx.HTTPStatusError as e:
            raise MintSubmissionError(
                f"Managed mint rejected with HTTP {e.response.status_code}: {e.response.text}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise MintSubmissionError(f"Managed mint request failed: {e!r}") from e
        if not nft_id:
            raise MintSubmissionError("Managed mint response has no id")
        return nft_id

    async def _wait_onchain(self, client: httpx.AsyncClient, nft_id: str) -> Dict[str, Any]:
        deadline = time.monotonic() + self.confirmation_timeout
        while True:
            try:
                resp = await client.get(f"/collections/{self.collection_id}/nfts/{nft_id}")
                resp.raise_for_status()
                onchain = resp.json().get("onChain") or {}
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Managed mint status check for {nft_id} failed: {e!r}")
                onchain = {}

            state = onchain.get("status")
            if state == "success":
                return onchain
            if state == "failed":
                raise MintExecutionError(
                    f"Managed mint {nft_id} failed on-chain", transaction_id=onchain.get("txId")
                )
            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(f"Managed mint {nft_id} still {state or 'unknown'}")
            await asyncio.sleep(self.poll_interval)

    async def mint(self, owner_address: str, token_uri: str) -> MintResult:
        async with self._client() as client:
            nft_id = await self._create(client, owner_address, token_uri)
            logger.info(f"Managed mint accepted: {nft_id}")
            onchain = await self._wait_onchain(client, nft_id)

        tx_id = onchain.get("txId")
        if not tx_id:
            raise MintExecutionError(f"Managed mint {nft_id} reported success without a transaction")

        receipt, confirmations = await self.chain.wait_for_confirmations(
            tx_id,
            self.min_confirmations,
            timeout=self.confirmation_timeout,
            poll_interval=self.poll_interval,
        )
        if receipt.get("status") != 1:
            raise MintExecutionError(f"Mint transaction {tx_id} reverted", transaction_id=tx_id)

        token_id = onchain.get("tokenId")
        return MintResult(
            transaction_id=tx_id,
            token_id=str(token_id) if token_id is not None else UNKNOWN_TOKEN_ID,
            token_uri=token_uri,
            confirmations=confirmations,
        )


def build_minter(settings, chain: ChainReader) -> ChainMinter:
    """Pick the minting strategy once, at startup"""
    if settings.minter_strategy == "managed":
        if not settings.managed_api_key or not settings.managed_collection_id:
            raise RuntimeError("Managed minting needs MANAGED_MINT_API_KEY and MANAGED_MINT_COLLECTION_ID")
        return ManagedMinter(
            chain,
            api_url=settings.managed_api_url,
            api_key=settings.managed_api_key,
            collection_id=settings.managed_collection_id,
            chain_slug=settings.managed_chain,
            min_confirmations=settings.min_confirmations,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            poll_interval=settings.managed_poll_seconds,
            http_timeout=settings.http_timeout_seconds,
        )

    if not settings.minter_private_key or not settings.nft_contract_address:
        raise RuntimeError("Direct minting needs MINTER_PRIVATE_KEY and NFT_CONTRACT_ADDRESS")
    return DirectMinter(
        chain,
        private_key=settings.minter_private_key,
        contract_address=settings.nft_contract_address,
        chain_id=settings.chain_id,
        min_confirmations=settings.min_confirmations,
        gas_margin_percent=settings.gas_margin_percent,
        confirmation_timeout=settings.confirmation_timeout_seconds,
        poll_interval=settings.confirmation_poll_seconds,
    )
