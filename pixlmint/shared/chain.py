import asyncio
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3RPCError

from pixlmint.core.errors import (
    ChainError,
    ConfirmationTimeoutError,
    ContractCallError,
    NotFoundError,
    RequestRejectedError,
)

logger = logging.getLogger(__name__)

NFT_CONTRACT_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "mintNFT",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "tokenURI", "type": "string"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "ownerOf",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "tokenURI",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

ERC20_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
]

# keccak256("Transfer(address,address,uint256)"), shared by ERC-20 and ERC-721
TRANSFER_TOPIC = HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


def logs_from(receipt: Any, address: str) -> List[Any]:
    """Receipt logs emitted by ``address``, in log order"""
    return [log for log in receipt["logs"] if same_address(log["address"], address)]


def topic_to_address(topic: Any) -> str:
    return Web3.to_checksum_address(HexBytes(topic)[-20:])


def topic_to_int(topic: Any) -> int:
    return int.from_bytes(HexBytes(topic), "big")


@contextmanager
def _rpc(call: str, ref: Any = None) -> Iterator[None]:
    try:
        yield
    except TransactionNotFound as e:
        raise NotFoundError(f"{call}: {ref} not found") from e
    except ContractLogicError as e:
        raise ContractCallError(f"{call} reverted: {e}") from e
    except Web3RPCError as e:
        raise RequestRejectedError(f"{call} rejected by the node: {e}") from e
    except ChainError:
        raise
    except Exception as e:
        logger.error(f"RPC call {call} failed: {e}")
        raise ChainError(f"{call} failed: {e}") from e


class ChainReader:
    """Read-only access to the EVM chain.

    Every method is idempotent and safe to retry. A transaction or receipt that
    does not exist yet raises ``NotFoundError`` so callers can tell "not yet
    mined" apart from a broken RPC endpoint (``ChainError``).
    """

    def __init__(
        self,
        w3: Web3,
        *,
        nft_contract_address: str = "",
        contracts: Optional[Dict[str, List[Dict[str, Any]]]] = None,
    ):
        self.w3 = w3
        self.nft_contract_address = nft_contract_address
        self._abis = {addr.lower(): abi for addr, abi in (contracts or {}).items()}
        if nft_contract_address:
            self._abis.setdefault(nft_contract_address.lower(), NFT_CONTRACT_ABI)

    @classmethod
    def from_settings(cls, settings) -> "ChainReader":
        w3 = Web3(
            Web3.HTTPProvider(
                settings.rpc_url,
                request_kwargs={"timeout": settings.rpc_timeout_seconds},
            )
        )
        return cls(
            w3,
            nft_contract_address=settings.nft_contract_address,
            contracts={settings.payment_token_address: ERC20_ABI},
        )

    def get_transaction(self, tx_id: str) -> Any:
        with _rpc("get_transaction", tx_id):
            return self.w3.eth.get_transaction(tx_id)

    def get_receipt(self, tx_id: str) -> Any:
        with _rpc("get_receipt", tx_id):
            return self.w3.eth.get_transaction_receipt(tx_id)

    def get_block_number(self) -> int:
        with _rpc("get_block_number"):
            return int(self.w3.eth.block_number)

    def contract(self, address: str) -> Any:
        abi = self._abis.get(address.lower())
        if abi is None:
            raise ChainError(f"No ABI registered for contract {address}")
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def read_contract(self, address: str, method: str, args: Sequence[Any] = ()) -> Any:
        contract = self.contract(address)
        with _rpc(method, address):
            return getattr(contract.functions, method)(*args).call()

    def token_owner(self, token_id: int) -> str:
        try:
            return self.read_contract(self.nft_contract_address, "ownerOf", [token_id])
        except ContractCallError as e:
            raise NotFoundError(f"token {token_id} does not exist") from e

    def token_uri(self, token_id: int) -> str:
        try:
            return self.read_contract(self.nft_contract_address, "tokenURI", [token_id])
        except ContractCallError as e:
            raise NotFoundError(f"token {token_id} does not exist") from e

    def confirmation_status(self, tx_id: str, confirmations: int) -> Optional[Tuple[Any, int]]:
        """
        One poll of ``tx_id``: the receipt and its depth once it is
        ``confirmations`` blocks deep, otherwise None. A reverted transaction
        is returned as soon as it is mined; checking ``status`` is up to the
        caller.
        """
        try:
            receipt = self.get_receipt(tx_id)
        except NotFoundError:
            return None
        if receipt.get("blockNumber") is None:
            return None
        if receipt.get("status") == 0:
            return receipt, 1
        seen = self.get_block_number() - int(receipt["blockNumber"]) + 1
        if seen < confirmations:
            return None
        return receipt, seen

    async def wait_for_confirmations(
        self,
        tx_id: str,
        confirmations: int,
        *,
        timeout: float,
        poll_interval: float = 2.0,
    ) -> Tuple[Any, int]:
        """Poll until ``tx_id`` is mined and deep enough, sleeping on the event loop between polls"""
        loop = asyncio.get_running_loop()
        deadline = time.monotonic() + timeout
        while True:
            try:
                found = await loop.run_in_executor(
                    None, self.confirmation_status, tx_id, confirmations
                )
            except ChainError as e:
                # the transaction is already out; keep polling until the deadline
                logger.warning(f"Polling {tx_id} failed, retrying: {e}")
                found = None
            if found is not None:
                return found

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Transaction {tx_id} did not reach {confirmations} confirmations "
                    f"within {timeout:.0f}s",
                    transaction_id=tx_id,
                )
            await asyncio.sleep(poll_interval)
