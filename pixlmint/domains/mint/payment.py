import logging
import re

from hexbytes import HexBytes

from pixlmint.core.errors import (
    InsufficientPaymentError,
    NotFoundError,
    PaymentNotFoundError,
    RequestRejectedError,
    WrongRecipientError,
)
from pixlmint.shared.chain import (
    TRANSFER_TOPIC,
    ChainReader,
    logs_from,
    same_address,
    topic_to_address,
    topic_to_int,
)

from .schemas import PaymentProof

logger = logging.getLogger(__name__)

TX_HASH = re.compile(r"0x[0-9a-fA-F]{64}")


class PaymentVerifier:
    def __init__(self, chain: ChainReader, token_address: str):
        self.chain = chain
        self.token_address = token_address

    def _transfer_logs(self, receipt) -> list:
        return [
            log
            for log in logs_from(receipt, self.token_address)
            if log["topics"] and HexBytes(log["topics"][0]) == TRANSFER_TOPIC
        ]

    def verify(self, tx_id: str, required_amount: int, required_recipient: str) -> PaymentProof:
        """
        Check that ``tx_id`` paid at least ``required_amount`` of the payment
        token into ``required_recipient``.
        """
        if not TX_HASH.fullmatch(tx_id):
            raise PaymentNotFoundError(f"Invalid payment transaction hash: {tx_id}")
        try:
            self.chain.get_transaction(tx_id)
        except (NotFoundError, RequestRejectedError) as e:
            raise PaymentNotFoundError(f"Payment transaction {tx_id} not found") from e
        try:
            receipt = self.chain.get_receipt(tx_id)
        except NotFoundError as e:
            raise PaymentNotFoundError(f"Payment transaction {tx_id} is not mined yet") from e

        transfers = self._transfer_logs(receipt)
        if not transfers:
            raise PaymentNotFoundError(f"Transaction {tx_id} has no payment token transfer")
        if len(transfers) > 1:
            raise PaymentNotFoundError(
                f"Transaction {tx_id} has {len(transfers)} payment token transfers, expected one"
            )

        log = transfers[0]
        if len(log["topics"]) < 3:
            raise PaymentNotFoundError(f"Transaction {tx_id} transfer log is malformed")
        sender = topic_to_address(log["topics"][1])
        recipient = topic_to_address(log["topics"][2])
        amount = topic_to_int(log["data"])

        if amount < required_amount:
            raise InsufficientPaymentError(
                f"Insufficient payment amount: got {amount}, need {required_amount}"
            )
        if not same_address(recipient, required_recipient):
            raise WrongRecipientError(f"Payment sent to {recipient}, not the treasury")

        logger.info(f"Payment {tx_id} verified: {amount} from {sender}")
        return PaymentProof(
            tx_id=tx_id,
            sender_address=sender,
            recipient_address=recipient,
            amount=amount,
            confirmed=receipt.get("blockNumber") is not None,
        )
