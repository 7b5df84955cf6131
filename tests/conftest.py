"""Shared fakes for the minting service tests."""

import hashlib
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest
from hexbytes import HexBytes
from sqlalchemy.orm import sessionmaker
from web3 import Web3
from web3.exceptions import TransactionNotFound

from pixlmint.core.errors import MintPipelineError
from pixlmint.domains.mint.assets import AssetResolver
from pixlmint.domains.mint.ledger import MintLedger
from pixlmint.domains.mint.minter import ChainMinter
from pixlmint.domains.mint.payment import PaymentVerifier
from pixlmint.domains.mint.reporter import ResultReporter
from pixlmint.domains.mint.schemas import MintResult
from pixlmint.domains.mint.services import MintDependencies, MintPolicy
from pixlmint.shared.chain import TRANSFER_TOPIC, ChainReader
from pixlmint.shared.database.connection import Base, make_engine
from pixlmint.shared.pinata_client import PinataClient
from pixlmint.shared.storage import LocalObjectStore

# Importing the models registers the tables on Base.metadata
from pixlmint.core import models  # noqa: F401

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
TOKEN_ADDRESS = "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed"
TREASURY = "0x" + "ab" * 20
PAYER = "0x" + "cd" * 20
NFT_CONTRACT = "0x" + "12" * 20
OWNER = "0x" + "34" * 20
REQUIRED_AMOUNT = 10 * 10**18
GATEWAY = "https://gateway.test/ipfs"


def address_topic(address: str) -> HexBytes:
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def int_word(value: int) -> HexBytes:
    return HexBytes(value.to_bytes(32, "big"))


def transfer_log(token: str, sender: str, recipient: str, amount: int) -> Dict[str, Any]:
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(recipient)],
        "data": int_word(amount),
    }


class FakeEth:
    """The slice of ``w3.eth`` the service touches"""

    def __init__(self):
        self.transactions: Dict[str, Any] = {}
        self.receipts: Dict[str, Any] = {}
        self.block_number = 100
        self.base_fee: Optional[int] = 1_000_000_000
        self.max_priority_fee = 100_000_000
        self.gas_price = 2_000_000_000
        self.nonce = 7
        self.sent: List[bytes] = []
        self.next_receipt: Optional[Dict[str, Any]] = None
        self.send_error: Optional[Exception] = None
        self.contracts: Dict[str, Any] = {}

    def add_receipt(self, tx_id: str, receipt: Dict[str, Any]) -> None:
        self.transactions[tx_id] = {"hash": tx_id}
        self.receipts[tx_id] = receipt

    def get_transaction(self, tx_id):
        if tx_id not in self.transactions:
            raise TransactionNotFound(f"Transaction {tx_id} not found")
        return self.transactions[tx_id]

    def get_transaction_receipt(self, tx_id):
        if tx_id not in self.receipts:
            raise TransactionNotFound(f"Transaction {tx_id} not found")
        return self.receipts[tx_id]

    def get_block(self, ident):
        block = {"number": self.block_number}
        if self.base_fee is not None:
            block["baseFeePerGas"] = self.base_fee
        return block

    def get_transaction_count(self, address, block_identifier="latest"):
        return self.nonce

    def send_raw_transaction(self, raw):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        tx_hash = HexBytes(hashlib.sha256(bytes(raw) + bytes([len(self.sent)])).digest())
        if self.next_receipt is not None:
            self.receipts[Web3.to_hex(tx_hash)] = self.next_receipt
        return tx_hash

    def contract(self, address=None, abi=None):
        return self.contracts[address.lower()]


@pytest.fixture
def eth() -> FakeEth:
    return FakeEth()


@pytest.fixture
def chain(eth) -> ChainReader:
    return ChainReader(SimpleNamespace(eth=eth), nft_contract_address=NFT_CONTRACT)


def _multipart_file(request: httpx.Request) -> bytes:
    boundary = request.headers["content-type"].split("boundary=")[1].encode()
    for part in request.content.split(b"--" + boundary):
        head, _, body = part.partition(b"\r\n\r\n")
        if b'name="file"' in head:
            return body[: -len(b"\r\n")] if body.endswith(b"\r\n") else body
    raise AssertionError("multipart body has no file part")


class FakePinata:
    """Content-addressed pinning: the CID is a hash of the pinned content"""

    def __init__(self):
        self.calls: List[str] = []
        self.files: Dict[str, bytes] = {}
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.fail_on: Optional[str] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(endpoint)
        if self.fail_on == endpoint:
            return httpx.Response(500, json={"error": "pinning unavailable"})
        if endpoint == "pinFileToIPFS":
            data = _multipart_file(request)
            cid = "Qm" + hashlib.sha256(data).hexdigest()[:44]
            self.files[cid] = data
        else:
            doc = json.loads(request.content)["pinataContent"]
            cid = "Qm" + hashlib.sha256(json.dumps(doc, sort_keys=True).encode()).hexdigest()[:44]
            self.documents[cid] = doc
        return httpx.Response(200, json={"IpfsHash": cid, "PinSize": 1, "Timestamp": "now"})

    def client(self) -> PinataClient:
        return PinataClient(
            jwt="test-jwt",
            gateway=GATEWAY,
            base_url="https://pinata.test/pinning",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def pinata() -> FakePinata:
    return FakePinata()


class FakeMinter(ChainMinter):
    def __init__(self, confirmations: int = 2):
        self.calls: List[tuple] = []
        self.error: Optional[MintPipelineError] = None
        self.token_id = "42"
        self.confirmations = confirmations

    async def mint(self, owner_address: str, token_uri: str) -> MintResult:
        self.calls.append((owner_address, token_uri))
        if self.error is not None:
            raise self.error
        return MintResult(
            transaction_id="0x" + "ef" * 32,
            token_id=self.token_id,
            token_uri=token_uri,
            confirmations=self.confirmations,
        )


@pytest.fixture
def minter() -> FakeMinter:
    return FakeMinter()


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def ledger(session_factory) -> MintLedger:
    return MintLedger(session_factory, reservation_ttl=900)


@pytest.fixture
def store(tmp_path) -> LocalObjectStore:
    return LocalObjectStore(str(tmp_path / "bucket"), bucket_name="pixlmixr-images")


class FakeWebhook:
    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.bodies: List[Dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(self.status_code, json={})


@pytest.fixture
def webhook() -> FakeWebhook:
    return FakeWebhook()


@pytest.fixture
def policy() -> MintPolicy:
    return MintPolicy(
        required_amount=REQUIRED_AMOUNT,
        treasury_address=TREASURY,
        allow_free_mint=True,
    )


@pytest.fixture
def make_deps(chain, pinata, minter, ledger, store, webhook, policy):
    def _make(**overrides) -> MintDependencies:
        values = dict(
            chain=chain,
            payment_verifier=PaymentVerifier(chain, TOKEN_ADDRESS),
            assets=AssetResolver(store),
            pinner=pinata.client(),
            minter=minter,
            reporter=ResultReporter(
                "https://db.test/api", "db-token", transport=httpx.MockTransport(webhook.handler)
            ),
            ledger=ledger,
            policy=policy,
        )
        values.update(overrides)
        return MintDependencies(**values)

    return _make
