import pytest
import requests
from unittest.mock import MagicMock, patch

from senders.base_sender import format_sender, thread_headers
from senders.mailgun_sender import MailgunSender
from senders.sendgrid_sender import SendGridSender
from senders.smtp_sender import SMTPSender


def test_thread_headers_wrap_bare_message_ids():
    assert thread_headers("abc@mail.example.com") == {
        "In-Reply-To": "<abc@mail.example.com>",
        "References": "<abc@mail.example.com>",
    }
    assert thread_headers(None) == {}
    assert format_sender("noreply@acme.com", " Acme Spas ") == "Acme Spas <noreply@acme.com>"


def test_smtp_message_is_marked_automated():
    sender = SMTPSender({"host": "smtp.acme.com"})
    msg = sender.build_message(
        "noreply@acme.com", "customer@example.com", "Re: Leak", "", text_body="On our way",
        headers={"In-Reply-To": "<m1@x>"},
    )

    assert msg["Auto-Submitted"] == "auto-replied"
    assert msg["In-Reply-To"] == "<m1@x>"
    assert msg["Message-ID"].endswith("@acme.com>")
    assert msg.get_content().strip() == "On our way"


def test_sendgrid_request_shape():
    sender = SendGridSender({"api_key": "sg-key"})
    request = sender.build_request(
        "Acme <noreply@acme.com>", "noreply@acme.com", "customer@example.com", "Hi", "", "text", None,
        {"Auto-Submitted": "auto-replied"},
    )

    assert request["headers"]["Authorization"] == "Bearer sg-key"
    assert request["json"]["from"] == {"email": "noreply@acme.com", "name": "Acme"}
    assert request["json"]["content"] == [{"type": "text/plain", "value": "text"}]


def test_mailgun_requires_domain():
    with pytest.raises(ValueError):
        MailgunSender({"api_key": "k"})


@pytest.mark.asyncio
async def test_mailgun_sends_custom_headers_as_form_fields():
    sender = MailgunSender({"api_key": "k", "domain": "mg.acme.com"})
    ok = MagicMock(status_code=200)
    with patch("senders.base_sender.requests.post", return_value=ok) as post:
        assert await sender.send("noreply@acme.com", "c@example.com", "Hi", "", text_body="x",
                                 headers={"In-Reply-To": "<m1@x>"})

    kwargs = post.call_args.kwargs
    assert kwargs["url"] == "https://api.mailgun.net/v3/mg.acme.com/messages"
    assert kwargs["data"]["h:In-Reply-To"] == "<m1@x>"
    assert kwargs["data"]["h:Auto-Submitted"] == "auto-replied"


@pytest.mark.asyncio
async def test_http_sender_reports_rejection_and_transport_errors():
    sender = SendGridSender({"api_key": "k"})
    with patch("senders.base_sender.requests.post", return_value=MagicMock(status_code=500, text="boom")):
        assert await sender.send("a@acme.com", "b@example.com", "s", "<p>x</p>") is False
    with patch("senders.base_sender.requests.post", side_effect=requests.exceptions.ConnectionError("down")):
        assert await sender.send("a@acme.com", "b@example.com", "s", "<p>x</p>") is False
