import os
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "PIXLMIXR Minting Service"
    app_version: str = "1.0.0"
    app_description: str = "Mints PIXLMIXR masterpieces as NFTs on Base"
    node_env: str = os.getenv("NODE_ENV", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Chain
    chain_name: str = "Base"
    chain_id: int = 8453
    rpc_url: str = os.getenv("RPC_URL", "https://mainnet.base.org")
    explorer_url: str = "https://basescan.org"
    nft_contract_address: str = os.getenv("NFT_CONTRACT_ADDRESS", "")
    minter_private_key: str = os.getenv("MINTER_PRIVATE_KEY", "")
    min_confirmations: int = 2
    gas_margin_percent: int = 20
    rpc_timeout_seconds: float = 30
    confirmation_timeout_seconds: float = 180
    confirmation_poll_seconds: float = 2

    # Payment ($DEGEN on Base)
    payment_token_address: str = "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed"
    payment_token_symbol: str = "DEGEN"
    required_payment_amount: int = 10 * 10**18
    treasury_address: str = os.getenv("TREASURY_WALLET_ADDRESS", "")
    allow_free_mint: bool = True

    # Object storage
    storage_backend: Literal["gcs", "local"] = "gcs"
    gcs_bucket_name: str = os.getenv("GCS_BUCKET_NAME", "pixlmixr-images")
    local_storage_dir: str = "./storage"
    http_timeout_seconds: float = 30

    # Pinata
    pinata_jwt: str = os.getenv("PINATA_JWT", "")
    pinata_api_url: str = "https://api.pinata.cloud/pinning"
    pinata_gateway: str = "https://gateway.pinata.cloud/ipfs"
    pinning_timeout_seconds: float = 60

    # Minting strategy
    minter_strategy: Literal["direct", "managed"] = "direct"
    managed_api_url: str = "https://www.crossmint.com/api/2022-06-09"
    managed_api_key: str = os.getenv("MANAGED_MINT_API_KEY", "")
    managed_collection_id: str = os.getenv("MANAGED_MINT_COLLECTION_ID", "")
    managed_chain: str = "base"
    managed_poll_seconds: float = 3

    # Persistence webhook
    persistence_api_url: str = os.getenv("CLOUDFLARE_D1_API_URL", "")
    persistence_api_token: str = os.getenv("CLOUDFLARE_API_TOKEN", "")

    # Mint ledger
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./pixlmint.db")
    reservation_ttl_seconds: int = 900

    collection_name: str = "PIXLMIXR"

    class Config:
        env_file = ".env"

    @model_validator(mode="after")
    def _check_strategy(self) -> "Settings":
        if self.minter_strategy == "direct" and self.minter_private_key and not self.nft_contract_address:
            raise ValueError("NFT_CONTRACT_ADDRESS is required for direct minting")
        if not self.allow_free_mint and not self.treasury_address:
            raise ValueError("TREASURY_WALLET_ADDRESS is required when free mints are disabled")
        return self


settings = Settings()
