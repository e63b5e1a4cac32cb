from batchflow_api.security import redact_sensitive_text, sign_payload, verify_signature


def test_redacts_tokens_query_secrets_and_signatures() -> None:
    text = (
        "token=abc password: hunter2 url=https://hooks.test/in?signature=deadbeef&x=1 "
        "Authorization: Bearer xyz X-Signature: 0a1b2c"
    )

    redacted = redact_sensitive_text(text)

    assert redacted is not None
    for secret in ("abc", "hunter2", "deadbeef", "xyz", "0a1b2c"):
        assert secret not in redacted
    assert "x=1" in redacted
    assert redact_sensitive_text(None) is None


def test_signature_round_trip_and_tamper_detection() -> None:
    body = b'{"eventType":"batch-created"}'
    signature = sign_payload(body, "s3cret")

    assert len(signature) == 64
    assert verify_signature(body, "s3cret", signature)
    assert verify_signature(body, "s3cret", signature.upper())
    assert not verify_signature(body + b" ", "s3cret", signature)
    assert not verify_signature(body, "other", signature)
