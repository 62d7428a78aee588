"""
Tests for SMSGatewayClient.

HTTP is mocked with the responses library; the interesting parts are
number normalization and failure classification.
"""

import json

import pytest
import requests
import responses

from clients.sms_client import SMSGatewayClient, SMSGatewayError, format_phone_number

BASE_URL = "https://sms.example.com"
ENDPOINT = f"{BASE_URL}/sms/2/text/advanced"


def accepted(message_id="sms-1", group="PENDING"):
    return {
        "messages": [{
            "messageId": message_id,
            "status": {"groupName": group, "description": "Message sent to next instance"},
        }]
    }


class TestFormatPhoneNumber:

    @pytest.mark.parametrize("raw,expected", [
        ("067 051 141", "+38267051141"),
        ("+382 67 051 141", "+38267051141"),
        ("0038267051141", "+38267051141"),
        ("38267051141", "+38267051141"),
        ("67051141", "+38267051141"),
    ])
    def test_normalizes_to_e164(self, raw, expected):
        assert format_phone_number(raw, "382") == expected

    def test_other_country_code(self):
        assert format_phone_number("064 123 4567", "381") == "+381641234567"

    def test_rejects_number_without_digits(self):
        with pytest.raises(ValueError, match="no digits"):
            format_phone_number("n/a", "382")


class TestSMSGatewayClientInit:
    """Fail-fast on invalid config."""

    @pytest.mark.parametrize("field", ["base_url", "api_key", "sender_id"])
    def test_init_rejects_empty_credential(self, field):
        kwargs = {"base_url": BASE_URL, "api_key": "key", "sender_id": "ServiceDesk"}
        kwargs[field] = ""
        with pytest.raises(ValueError, match=field):
            SMSGatewayClient(**kwargs)

    def test_endpoint_ignores_trailing_slash(self):
        client = SMSGatewayClient(f"{BASE_URL}/", "key", "ServiceDesk")
        assert client.endpoint == ENDPOINT


class TestSendSms:

    @pytest.fixture
    def client(self):
        return SMSGatewayClient(BASE_URL, "test-key", "ServiceDesk")

    @responses.activate
    def test_successful_send_returns_message_id(self, client):
        responses.add(responses.POST, ENDPOINT, json=accepted("sms-42"), status=200)

        assert client.send_sms("067051141", "Part arrived") == "sms-42"

    @responses.activate
    def test_request_shape(self, client):
        responses.add(responses.POST, ENDPOINT, json=accepted(), status=200)

        client.send_sms("067051141", "Part arrived")

        request = responses.calls[0].request
        assert request.headers["Authorization"] == "App test-key"
        assert json.loads(request.body) == {
            "messages": [{
                "from": "ServiceDesk",
                "destinations": [{"to": "+38267051141"}],
                "text": "Part arrived",
            }]
        }

    @responses.activate
    def test_rejected_message_is_permanent(self, client):
        responses.add(responses.POST, ENDPOINT, json=accepted(group="REJECTED"), status=200)

        with pytest.raises(SMSGatewayError) as exc_info:
            client.send_sms("067051141", "Hi")

        assert exc_info.value.transient is False

    @responses.activate
    def test_server_error_is_transient(self, client):
        responses.add(
            responses.POST, ENDPOINT,
            json={"requestError": {"serviceException": {"text": "Try later"}}},
            status=503,
        )

        with pytest.raises(SMSGatewayError, match="Try later") as exc_info:
            client.send_sms("067051141", "Hi")

        assert exc_info.value.transient is True
        assert exc_info.value.status_code == 503

    @responses.activate
    def test_unauthorized_is_permanent(self, client):
        responses.add(responses.POST, ENDPOINT, json={}, status=401)

        with pytest.raises(SMSGatewayError, match="HTTP 401") as exc_info:
            client.send_sms("067051141", "Hi")

        assert exc_info.value.transient is False

    @responses.activate
    def test_timeout_is_transient(self, client):
        responses.add(responses.POST, ENDPOINT, body=requests.exceptions.Timeout("slow"))

        with pytest.raises(SMSGatewayError) as exc_info:
            client.send_sms("067051141", "Hi")

        assert exc_info.value.transient is True

    @responses.activate
    def test_empty_message_list_is_transient(self, client):
        responses.add(responses.POST, ENDPOINT, json={"messages": []}, status=200)

        with pytest.raises(SMSGatewayError) as exc_info:
            client.send_sms("067051141", "Hi")

        assert exc_info.value.transient is True

    def test_unusable_number_fails_before_any_request(self, client):
        with pytest.raises(SMSGatewayError) as exc_info:
            client.send_sms("unknown", "Hi")

        assert exc_info.value.transient is False
