"""
Payment Error Taxonomy
Uniform error codes for chain adapters, the XRPL verifier and the escrow orchestrator,
plus the classifier and user-facing formatter that map raw chain errors onto them.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Optional, Union

import aiohttp

logger = logging.getLogger(__name__)


class PaymentErrorCode(Enum):
    """Error codes surfaced in structured {success: false, error} results"""
    VALIDATION_ERROR = "ValidationError"
    WALLET_NOT_CONNECTED = "WalletNotConnected"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    USER_REJECTED = "UserRejected"
    NETWORK_ERROR = "NetworkError"
    GAS_OR_FEE_ERROR = "GasOrFeeError"
    NONCE_ERROR = "NonceError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    UNSUPPORTED_CHAIN = "UnsupportedChain"
    PRICE_UNAVAILABLE = "PriceUnavailable"
    INVALID_PRICE = "InvalidPrice"
    ALREADY_RELEASED = "AlreadyReleased"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    INVALID_TRANSITION = "InvalidTransition"
    DUPLICATE_TRANSACTION = "DuplicateTransaction"
    PAYMENT_NOT_VERIFIED = "PaymentNotVerified"
    RECONCILIATION_PENDING = "ReconciliationPending"
    UNKNOWN = "Unknown"


class SettlementError(Exception):
    """Base class for settlement errors carrying a taxonomy code"""
    code = PaymentErrorCode.UNKNOWN

    def __init__(self, message: str = "", code: Optional[PaymentErrorCode] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code


class ValidationError(SettlementError):
    code = PaymentErrorCode.VALIDATION_ERROR


class UnsupportedChainError(ValidationError):
    code = PaymentErrorCode.UNSUPPORTED_CHAIN


class WalletNotConnectedError(SettlementError):
    code = PaymentErrorCode.WALLET_NOT_CONNECTED


class InsufficientBalanceError(SettlementError):
    code = PaymentErrorCode.INSUFFICIENT_BALANCE


class UserRejectedError(SettlementError):
    code = PaymentErrorCode.USER_REJECTED


class ChainNetworkError(SettlementError):
    code = PaymentErrorCode.NETWORK_ERROR


class GasOrFeeError(SettlementError):
    code = PaymentErrorCode.GAS_OR_FEE_ERROR


class NonceError(SettlementError):
    code = PaymentErrorCode.NONCE_ERROR


class PaymentTimeoutError(SettlementError):
    code = PaymentErrorCode.TIMEOUT


class PriceUnavailableError(SettlementError):
    code = PaymentErrorCode.PRICE_UNAVAILABLE


class InvalidPriceError(SettlementError):
    code = PaymentErrorCode.INVALID_PRICE


class AlreadyReleasedError(SettlementError):
    code = PaymentErrorCode.ALREADY_RELEASED


class EscrowNotFoundError(SettlementError):
    code = PaymentErrorCode.NOT_FOUND


class UnauthorizedError(SettlementError):
    code = PaymentErrorCode.UNAUTHORIZED


class InvalidTransitionError(SettlementError):
    code = PaymentErrorCode.INVALID_TRANSITION


class DuplicateTransactionError(SettlementError):
    code = PaymentErrorCode.DUPLICATE_TRANSACTION


class PaymentErrorClassifier:
    """Maps adapter-specific error text onto the payment error taxonomy"""

    # Order matters: EVM reports "insufficient funds for gas * price + value"
    ERROR_PATTERNS = [
        (r"user.*rejected|user.*denied|rejected.*by.*user|cancell?ed.*by.*user", PaymentErrorCode.USER_REJECTED),
        (r"insufficient.*(funds|balance|lamports)|tecUNFUNDED|tecPATH_PARTIAL|exceeds.*balance",
         PaymentErrorCode.INSUFFICIENT_BALANCE),
        (r"wallet.*not.*connected|no.*wallet|not.*connected.*wallet|missing.*(seed|private.*key|signer)",
         PaymentErrorCode.WALLET_NOT_CONNECTED),
        (r"nonce", PaymentErrorCode.NONCE_ERROR),
        (r"out.*of.*gas|\bgas\b|insufficient.*fee|fee.*too.*low|INSUF_FEE|underpriced",
         PaymentErrorCode.GAS_OR_FEE_ERROR),
        (r"timeout|timed.*out|deadline.*exceeded|block.*height.*exceeded", PaymentErrorCode.TIMEOUT),
        (r"network|connection|econnrefused|econnreset|\b50[234]\b|service.*unavailable|rate.*limit|\b429\b",
         PaymentErrorCode.NETWORK_ERROR),
    ]

    @classmethod
    def classify(cls, error: Union[BaseException, str, None]) -> PaymentErrorCode:
        """Return the taxonomy code for an exception or raw error message"""
        if error is None:
            return PaymentErrorCode.UNKNOWN
        if isinstance(error, SettlementError):
            return error.code
        if isinstance(error, asyncio.TimeoutError):
            return PaymentErrorCode.TIMEOUT
        if isinstance(error, (aiohttp.ClientConnectionError, ConnectionError)):
            return PaymentErrorCode.NETWORK_ERROR

        message = str(error)
        for pattern, code in cls.ERROR_PATTERNS:
            if re.search(pattern, message, re.IGNORECASE):
                return code
        return PaymentErrorCode.UNKNOWN


GENERIC_TECHNICAL_MESSAGE = (
    "Transaction failed due to a technical issue. "
    "Please try again or contact support if the problem persists."
)


def format_error_message(error: Optional[str]) -> str:
    """Translate a raw chain error into a short, user-facing message"""
    if not error:
        return "An unexpected error occurred. Please try again."

    error_str = error.lower()

    if "missing revert data" in error_str or "call_exception" in error_str:
        return ("Transaction failed. This could be due to insufficient balance, network issues, "
                "or gas problems. Please check your wallet balance and try again.")
    if "insufficient funds" in error_str or "insufficient balance" in error_str:
        return "Insufficient funds in your wallet. Please add more funds and try again."
    if "user rejected" in error_str or "user denied" in error_str:
        return "Transaction was cancelled by user."
    if "network" in error_str or "connection" in error_str:
        return "Network connection issue. Please check your internet connection and try again."
    if "gas" in error_str:
        return "Transaction failed due to gas issues. Please try again with higher gas settings."
    if "nonce" in error_str:
        return "Transaction nonce error. Please refresh the page and try again."
    if "timeout" in error_str or "timed out" in error_str:
        return "Transaction timed out. Please try again."

    # Raw chain text (hex blobs, revert reasons, stack dumps) never reaches the user
    if len(error) > 100 or "0x" in error_str or "revert" in error_str:
        return GENERIC_TECHNICAL_MESSAGE

    return error


def describe_error(error: Union[BaseException, str]) -> tuple:
    """Return (code, user_message) for an exception or raw message"""
    code = PaymentErrorClassifier.classify(error)
    message = error.message if isinstance(error, SettlementError) else str(error)
    return code, format_error_message(message)
