import pytest

from memchat.exceptions import ErrorCategory
from memchat.llm.errors import APIErrorDetail, decode_error_body, describe_api_error


def test_decode_structured_bodies():
    detail = decode_error_body(
        b'{"error": {"message": "You exceeded your quota", "type": "insufficient_quota", "code": 429}}'
    )
    assert detail == APIErrorDetail(message="You exceeded your quota", code="429", type="insufficient_quota")

    google = decode_error_body('[{"error": {"code": 400, "message": "bad", "status": "INVALID_ARGUMENT"}}]')
    assert google.message == "bad"
    assert google.type == "INVALID_ARGUMENT"

    assert decode_error_body('{"error": "plain string"}').message == "plain string"


def test_decode_falls_back_to_raw_text():
    assert decode_error_body(b"<html>502 Bad Gateway</html>").message == "<html>502 Bad Gateway</html>"
    assert decode_error_body(None) == APIErrorDetail()
    assert decode_error_body(b"") == APIErrorDetail()


@pytest.mark.parametrize(
    "status, message, category",
    [
        (400, "This model's maximum context length is 8192 tokens", ErrorCategory.CONTEXT_LENGTH),
        (400, "The model `gpt-9` does not exist", ErrorCategory.MODEL_NOT_FOUND),
        (400, "temperature must be <= 2", ErrorCategory.BAD_REQUEST),
        (401, "", ErrorCategory.AUTHENTICATION),
        (402, "", ErrorCategory.PAYMENT),
        (403, "", ErrorCategory.PERMISSION),
        (404, "model not found", ErrorCategory.MODEL_NOT_FOUND),
        (404, "image input not supported", ErrorCategory.VISION_NOT_SUPPORTED),
        (404, "", ErrorCategory.ENDPOINT_NOT_FOUND),
        (429, "Rate limit reached", ErrorCategory.RATE_LIMIT),
        (429, "You exceeded your current quota", ErrorCategory.QUOTA),
        (500, "", ErrorCategory.SERVER_ERROR),
        (503, "", ErrorCategory.SERVER_ERROR),
        (504, "", ErrorCategory.GATEWAY_TIMEOUT),
        (418, "teapot", ErrorCategory.UNKNOWN),
    ],
)
def test_status_taxonomy(status, message, category):
    error = describe_api_error(status, APIErrorDetail(message=message or None), "OpenAI")
    assert error.category == category
    assert error.status_code == status


def test_messages_are_human_readable():
    error = describe_api_error(401, APIErrorDetail(), "Anthropic")
    assert str(error) == "Authentication failed for Anthropic. Please check your API key in settings."
    error = describe_api_error(418, APIErrorDetail(message="teapot"), "X")
    assert str(error) == "API Error (418): teapot"
    error = describe_api_error(400, APIErrorDetail(), "X")
    assert str(error) == "Invalid request: Please check your configuration."
