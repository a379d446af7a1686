from guardian.logging import (
    _add_correlation_id,
    _redact_sensitive,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
)


def test_sensitive_fields_are_masked():
    event = _redact_sensitive(
        None,
        "info",
        {
            "event": "login",
            "user_email": "alice@example.com",
            "client_key": "abcdefghijkl",
            "password": "pw",
            "tenant_id": "ABC123",
        },
    )

    assert event["user_email"] == "al***om"
    assert event["client_key"] == "ab***kl"
    # Too short to partially reveal
    assert event["password"] == "pw"
    assert event["tenant_id"] == "ABC123"


def test_correlation_id_is_bound_to_events():
    token = correlation_id_var.set(None)
    try:
        assert _add_correlation_id(None, "info", {"event": "x"}) == {"event": "x"}

        cid = set_correlation_id("req-42")
        assert cid == "req-42" == get_correlation_id()
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"

        generated = set_correlation_id()
        assert generated and generated != "req-42"
    finally:
        correlation_id_var.reset(token)
