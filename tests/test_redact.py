from giftpay.infra.logs import REDACTED, redact, redact_processor


def test_redacts_sensitive_keys_recursively():
    payload = {
        "billingType": "CREDIT_CARD",
        "creditCard": {"number": "4111111111111111", "ccv": "123"},
        "creditCardHolderInfo": {"cpfCnpj": "52998224725",
                                 "addressNumber": "10", "name": "Ana"},
        "customers": [{"taxId": "52998224725", "email": "a@b.co"}],
        "holderName": "ANA",
        "value": 150.0,
    }
    out = redact(payload)
    assert out["creditCard"] == REDACTED
    assert out["creditCardHolderInfo"]["cpfCnpj"] == REDACTED
    assert out["creditCardHolderInfo"]["addressNumber"] == REDACTED
    assert out["creditCardHolderInfo"]["name"] == "Ana"
    assert out["customers"][0]["taxId"] == REDACTED
    assert out["customers"][0]["email"] == "a@b.co"
    assert out["holderName"] == REDACTED
    assert out["value"] == 150.0
    # the input is left alone
    assert payload["creditCard"]["ccv"] == "123"


def test_key_match_is_case_insensitive():
    out = redact({"CVV": "999", "ExpiryMonth": "12", "PASSWORD": "x"})
    assert set(out.values()) == {REDACTED}


def test_card_runs_in_strings_are_masked():
    assert redact("card 4111 1111 1111 1111 declined") == \
        "card ****1111 declined"
    assert redact("order 12345") == "order 12345"
    assert redact(["5500-0000-0000-0004"]) == ["****0004"]


def test_processor_keeps_event_name_and_masks_fields():
    event = {
        "event": "gateway.response 4111111111111111",
        "level": "info",
        "body": {"creditCard": {"number": "4111111111111111"}},
        "taxId": "52998224725",
        "payment_id": "p1",
    }
    out = redact_processor(None, "info", event)
    assert out["event"] == "gateway.response ****1111"
    assert out["level"] == "info"
    assert out["body"] == {"creditCard": REDACTED}
    assert out["taxId"] == REDACTED
    assert out["payment_id"] == "p1"
