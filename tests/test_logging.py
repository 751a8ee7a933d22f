"""
Unit tests for log event masking.
"""
import pytest

from ticket_payments.monitoring.logging import mask_phone, mask_sensitive


class TestMaskSensitive:
    """Credentials and payer phone numbers never reach the log sink."""

    @pytest.mark.unit
    def test_phone_numbers_keep_their_ends(self) -> None:
        assert mask_phone("254712345678") == "2547****5678"
        assert mask_phone(254712345678) == "2547****5678"
        assert mask_phone("12345") == "12345"

    @pytest.mark.unit
    def test_event_dict_masked(self) -> None:
        event = mask_sensitive(
            None,
            "info",
            {
                "event": "mpesa_stk_push_initiating",
                "phone": "254712345678",
                "passkey": "bfb279f9aa9bdbcf",
                "access_token": "abc123",
                "amount": 100,
            },
        )

        assert event == {
            "event": "mpesa_stk_push_initiating",
            "phone": "2547****5678",
            "passkey": "***",
            "access_token": "***",
            "amount": 100,
        }

    @pytest.mark.unit
    def test_empty_values_untouched(self) -> None:
        event = mask_sensitive(None, "info", {"event": "x", "password": "", "phone": None})

        assert event == {"event": "x", "password": "", "phone": None}
