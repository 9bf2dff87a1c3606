"""HTTP status mapping for settlement error codes"""

from fastapi.responses import JSONResponse

from services.escrow_orchestrator import OperationResult
from utils.payment_errors import PaymentErrorCode

STATUS_BY_CODE = {
    PaymentErrorCode.VALIDATION_ERROR: 400,
    PaymentErrorCode.UNSUPPORTED_CHAIN: 400,
    PaymentErrorCode.INVALID_TRANSITION: 400,
    PaymentErrorCode.INVALID_PRICE: 400,
    PaymentErrorCode.DUPLICATE_TRANSACTION: 400,
    PaymentErrorCode.PAYMENT_NOT_VERIFIED: 400,
    PaymentErrorCode.CANCELLED: 400,
    PaymentErrorCode.UNAUTHORIZED: 403,
    PaymentErrorCode.NOT_FOUND: 404,
    PaymentErrorCode.ALREADY_RELEASED: 409,
    # Chain-side failures
    PaymentErrorCode.WALLET_NOT_CONNECTED: 502,
    PaymentErrorCode.INSUFFICIENT_BALANCE: 502,
    PaymentErrorCode.USER_REJECTED: 502,
    PaymentErrorCode.NETWORK_ERROR: 502,
    PaymentErrorCode.GAS_OR_FEE_ERROR: 502,
    PaymentErrorCode.NONCE_ERROR: 502,
    PaymentErrorCode.TIMEOUT: 502,
    PaymentErrorCode.PRICE_UNAVAILABLE: 503,
    # Money moved; the record follows through the outbox
    PaymentErrorCode.RECONCILIATION_PENDING: 202,
    PaymentErrorCode.UNKNOWN: 500,
}


def status_for(code) -> int:
    return STATUS_BY_CODE.get(code, 500)


def result_response(result: OperationResult, success_status: int = 200) -> JSONResponse:
    if result.success:
        return JSONResponse(status_code=success_status, content=result.to_dict())
    return JSONResponse(status_code=status_for(result.error_code), content=result.to_dict())
