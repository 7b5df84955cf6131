from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pixlmint.shared.utils.response import ErrorResponse, SuccessResponse

UNKNOWN_TOKEN_ID = "unknown"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DescriptiveMetadata(_CamelModel):
    """Free-form attributes supplied by the creation flow"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    styles: List[str] = Field(default_factory=list)
    high_res: bool = Field(False, alias="highRes")


# Required fields are checked by the orchestrator so that a missing field is a
# ValidationError (400) rather than a framework-level 422.
class MintRequest(_CamelModel):
    artifact_id: Optional[str] = Field(None, alias="artifactId")
    owner_address: Optional[str] = Field(None, alias="ownerAddress")
    payment_tx_id: Optional[str] = Field(None, alias="paymentTxId")
    source_image_ref: Optional[str] = Field(None, alias="sourceImageRef")
    descriptive_metadata: DescriptiveMetadata = Field(
        default_factory=DescriptiveMetadata, alias="descriptiveMetadata"
    )


class PaymentProof(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_id: str
    sender_address: str
    recipient_address: str
    amount: int
    confirmed: bool


class PinnedContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_id: str
    gateway_url: str
    media_type: str


class PinnedBundle(BaseModel):
    asset: PinnedContent
    metadata: Optional[PinnedContent] = None

    def to_response(self) -> Dict[str, Optional[str]]:
        return {
            "imageUrl": self.asset.gateway_url,
            "imageHash": self.asset.content_id,
            "metadataUrl": self.metadata.gateway_url if self.metadata else None,
            "metadataHash": self.metadata.content_id if self.metadata else None,
        }


class MintResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(..., min_length=1)
    token_id: str = UNKNOWN_TOKEN_ID
    token_uri: str
    confirmations: int


class MintOutcome(BaseModel):
    result: MintResult
    pinned: PinnedBundle
    payment: Optional[PaymentProof] = None


# HTTP responses
class IpfsOut(BaseModel):
    imageUrl: str
    imageHash: str
    metadataUrl: Optional[str] = None
    metadataHash: Optional[str] = None


class BlockchainOut(BaseModel):
    chain: str
    contract: str
    explorer: str


class MintOut(SuccessResponse):
    artifactId: str
    transactionId: str
    tokenId: str
    tokenURI: str
    confirmations: int
    ipfs: IpfsOut
    blockchain: BlockchainOut
    timestamp: str


class MintErrorOut(ErrorResponse):
    ipfs: Optional[IpfsOut] = None
    transactionId: Optional[str] = None
