from sendly.schemas.common import ErrorOut

# Default example per status; endpoints can override with a domain-specific code.
_DEFAULT_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("validation_error", "Campaign message is required"),
    401: ("unauthorized", "Missing Shopify session token"),
    404: ("not_found", "Campaign not found"),
    409: ("conflict", "Duplicate entry"),
    422: ("validation_error", "Validation failed"),
    500: ("internal_error", "Internal server error"),
    502: ("provider_error", "Payment provider rejected the checkout request"),
    503: ("queue_unavailable", "Job queue unavailable, please retry"),
}

_DOMAIN_EXAMPLES: dict[str, tuple[int, str, dict | None]] = {
    "insufficient_credits": (
        400,
        "Insufficient credits. Required: 3, Available: 0",
        {"required_credits": 3, "available_credits": 0, "missing_credits": 3},
    ),
    "invalid_state": (400, "Campaign cannot be sent (status: sending)", None),
    "transient_error": (503, "Database is busy, please retry", None),
}


def _example(code: str, message: str, details: dict | None = None) -> dict:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": "8d8f2b00-6c79-4a45-8ff4-b0a5f2bc4bc2",
            "path": "/campaigns/abc/send",
            "details": details,
        }
    }


def error_responses(*status_codes: int, examples: tuple[str, ...] = ()) -> dict[int, dict]:
    """OpenAPI `responses` entries for the error envelope.

    `examples` names extra error codes (e.g. `insufficient_credits`) to show
    alongside the default example of their status.
    """
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _DEFAULT_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        named = {code: {"value": _example(code, message)}}
        for extra in examples:
            extra_status, extra_message, extra_details = _DOMAIN_EXAMPLES[extra]
            if extra_status == status_code:
                named[extra] = {"value": _example(extra, extra_message, extra_details)}
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {"application/json": {"examples": named}},
        }
    return responses
