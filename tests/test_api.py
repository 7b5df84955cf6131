from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from web3.exceptions import ContractLogicError

from conftest import GATEWAY, NFT_CONTRACT, OWNER, PNG_BYTES

from pixlmint.core.config import Settings
from pixlmint.core.errors import ChainError, MintExecutionError, MintSubmissionError
from pixlmint.main import create_app


@pytest.fixture
def app_settings():
    return Settings(nft_contract_address=NFT_CONTRACT, explorer_url="https://explorer.test")


@pytest.fixture
def client(app_settings, make_deps, store):
    store.put(f"creations/{OWNER}/abc123.png", PNG_BYTES, "image/png")
    app = create_app(app_settings, make_deps())
    with TestClient(app) as test_client:
        yield test_client


def _body(**fields):
    body = {"artifactId": "abc123", "ownerAddress": OWNER}
    body.update(fields)
    return body


def test_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert "POST /mint - Mint NFT" in response.json()["endpoints"]


def test_mint(client):
    response = client.post("/mint", json=_body())

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["artifactId"] == "abc123"
    assert data["tokenId"] == "42"
    assert data["confirmations"] == 2
    assert data["tokenURI"] == data["ipfs"]["metadataUrl"]
    assert data["ipfs"]["imageUrl"].startswith(GATEWAY)
    assert data["ipfs"]["imageHash"] and data["ipfs"]["metadataHash"]
    assert data["blockchain"] == {
        "chain": "Base",
        "contract": NFT_CONTRACT,
        "explorer": f"https://explorer.test/tx/{data['transactionId']}",
    }
    assert data["timestamp"]


def test_report_is_flushed_on_shutdown(app_settings, make_deps, store, webhook):
    store.put(f"creations/{OWNER}/abc123.png", PNG_BYTES, "image/png")

    with TestClient(create_app(app_settings, make_deps())) as test_client:
        assert test_client.post("/mint", json=_body()).status_code == 200

    assert webhook.bodies[0]["masterpieceId"] == "abc123"


def test_missing_fields(client, pinata):
    response = client.post("/mint", json={"artifactId": "abc123"})

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "ValidationError",
        "message": "Missing required fields: ownerAddress",
    }
    assert pinata.calls == []


def test_malformed_owner_address(client, pinata):
    response = client.post("/mint", json=_body(ownerAddress="0xOwner"))

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"
    assert pinata.calls == []


def test_malformed_payment_hash(client, pinata):
    response = client.post("/mint", json=_body(paymentTxId="0x1234"))

    assert response.status_code == 400
    assert response.json()["error"] == "PaymentNotFoundError"
    assert pinata.calls == []


def test_malformed_body(client):
    response = client.post("/mint", content=b"not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"] == "ValidationError"


def test_already_minted(client):
    assert client.post("/mint", json=_body()).status_code == 200

    response = client.post("/mint", json=_body())

    assert response.status_code == 409
    assert response.json()["error"] == "AlreadyMintedError"


def test_missing_image(client):
    response = client.post("/mint", json=_body(artifactId="nothing-here"))

    assert response.status_code == 404
    assert response.json()["error"] == "AssetNotFoundError"
    assert "ipfs" not in response.json()


def test_submission_failure_returns_pinned_urls(client, minter):
    minter.error = MintSubmissionError("rpc down")

    response = client.post("/mint", json=_body())

    assert response.status_code == 502
    data = response.json()
    assert data["error"] == "MintSubmissionError"
    assert data["ipfs"]["imageUrl"].startswith(GATEWAY)
    assert data["ipfs"]["metadataUrl"].startswith(GATEWAY)


def test_reverted_mint_returns_the_transaction(client, minter):
    minter.error = MintExecutionError("reverted", transaction_id="0xdead")

    response = client.post("/mint", json=_body())

    assert response.status_code == 500
    assert response.json()["transactionId"] == "0xdead"
    assert response.json()["ipfs"]["metadataHash"]


def _nft_contract(eth, owner_of):
    class View:
        def __init__(self, fn):
            self.fn = fn

        def call(self):
            return self.fn()

    eth.contracts[NFT_CONTRACT.lower()] = SimpleNamespace(
        functions=SimpleNamespace(
            ownerOf=lambda token_id: View(lambda: owner_of(token_id)),
            tokenURI=lambda token_id: View(lambda: f"{GATEWAY}/QmMeta{token_id}"),
        )
    )


def test_verify_token(client, eth):
    _nft_contract(eth, lambda token_id: "0x" + "34" * 20)

    response = client.get("/verify/7")

    assert response.status_code == 200
    assert response.json() == {
        "tokenId": "7",
        "owner": "0x" + "34" * 20,
        "tokenURI": f"{GATEWAY}/QmMeta7",
        "contract": NFT_CONTRACT,
        "explorer": f"https://explorer.test/token/{NFT_CONTRACT}?a=7",
    }


def test_verify_unknown_token(client, eth):
    def owner_of(token_id):
        raise ContractLogicError("ERC721: invalid token ID")

    _nft_contract(eth, owner_of)

    response = client.get("/verify/999")

    assert response.status_code == 404
    assert response.json()["error"] == "Not Found"


def test_verify_non_numeric_token(client):
    assert client.get("/verify/abc").status_code == 400


def test_health(client, eth):
    eth.block_number = 4321

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["blockchain"]["blockNumber"] == 4321


def test_health_when_rpc_is_down(client, chain, monkeypatch):
    def down():
        raise ChainError("get_block_number failed: connection refused")

    monkeypatch.setattr(chain, "get_block_number", down)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
