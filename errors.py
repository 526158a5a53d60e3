from typing import Dict

ERROR_CODE_MAP: Dict[str, Dict[str, str]] = {
    "AUTHENTICITY_FAILED": {
        "message": "Webhook signature could not be verified",
        "hint": "Check the webhook signing secret or the trusted App Store root certificates.",
    },
    "INVALID_PAYLOAD": {
        "message": "Payload could not be parsed",
        "hint": "The request body must be the provider's JSON notification.",
    },
    "USER_RESOLUTION_FAILED": {
        "message": "The notification could not be matched to a user",
        "hint": "The event is parked in the ledger; link the purchase and replay it.",
    },
    "PROVIDER_MISMATCH": {
        "message": "The subscription is linked to a different payment provider",
        "hint": "Cancel the active subscription before subscribing through another store.",
    },
    "CONCURRENCY_CONFLICT": {
        "message": "The subscription was updated concurrently",
        "hint": "Retry the request; persistent conflicts need manual investigation.",
    },
    "REFUND_INELIGIBLE": {
        "message": "This payment cannot be refunded",
        "hint": "Refunds are available within 7 days of the latest payment, once per payment.",
    },
    "PROVIDER_CALL_FAILED": {
        "message": "The payment provider did not confirm the operation",
        "hint": "Nothing was changed locally; retry the refund later.",
    },
    "INVALID_OPERATION": {
        "message": "Operation not allowed for this item",
        "hint": "Only one-time items can be dismissed; paused or cancelled items cannot be confirmed.",
    },
    "NOT_FOUND": {
        "message": "Resource not found",
        "hint": "Check the identifier and that it belongs to the signed-in user.",
    },
    "LIMIT_REACHED": {
        "message": "Recurring item limit reached",
        "hint": "Upgrade to premium to track unlimited recurring items.",
    },
    "UNEXPECTED_ERROR": {
        "message": "Unexpected error",
        "hint": "Check the service logs with the trace id.",
    },
}


def explain_error(code: str | None) -> Dict[str, str] | None:
    if not code:
        return None
    return ERROR_CODE_MAP.get(code)
