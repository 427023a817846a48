"""
IMAP mail provider tests.
The IMAP session is replaced by an in-memory mailbox.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from imap_tools.errors import MailboxFetchError, MailboxLoginError

from mailbrief.core.ingestion import ImapMailProvider
from mailbrief.exceptions import FetchError, MailAuthError
from mailbrief.models import FetchQuery

HTML_BODY = "<html><body><h1>Release notes</h1><p>Version 2.0 ships <b>today</b>.</p></body></html>"


def fake_mail(uid: str, date: datetime, **overrides) -> SimpleNamespace:
    data = {
        "uid": uid,
        "headers": {"message-id": (f"<{uid}@mail.co.com>",)},
        "subject": f"Subject {uid}",
        "from_values": SimpleNamespace(full="Alice <alice@co.com>"),
        "from_": "alice@co.com",
        "to": ("me@co.com",),
        "text": "Plain text body " * 10,
        "html": "",
        "flags": (),
        "date": date,
        "attachments": [],
    }
    data.update(overrides)
    return SimpleNamespace(**data)


class FakeMailBox:
    def __init__(self, messages, error=None) -> None:
        self.messages = messages
        self.error = error
        self.fetch_kwargs = None
        self.logged_out = False

    def fetch(self, criteria, mark_seen, reverse):
        self.fetch_kwargs = {"criteria": criteria, "mark_seen": mark_seen, "reverse": reverse}
        if self.error:
            raise self.error
        yield from self.messages

    def logout(self):
        self.logged_out = True


@pytest.fixture
def imap_settings(settings):
    return settings.model_copy(update={"GMAIL_USER": "me@gmail.com", "GMAIL_APP_PASSWORD": "app-pass"})


def _query(**overrides) -> FetchQuery:
    data = {"after": datetime(2026, 10, 17), "before": datetime(2026, 10, 17, 23, 59, 59), "max_results": 10}
    data.update(overrides)
    return FetchQuery(**data)


def _provider_with(imap_settings, monkeypatch, mailbox) -> ImapMailProvider:
    provider = ImapMailProvider(imap_settings)
    monkeypatch.setattr(provider, "connect", lambda login, password: mailbox)
    return provider


def test_build_criteria_for_gmail(imap_settings) -> None:
    criteria = str(ImapMailProvider(imap_settings).build_criteria(_query(include_read=False)))

    assert 'X-GM-RAW "-category:promotions -category:social"' in criteria
    assert "SINCE 17-Oct-2026" in criteria
    assert "BEFORE 18-Oct-2026" in criteria
    assert "UNSEEN" in criteria


def test_build_criteria_for_other_servers(imap_settings) -> None:
    other = imap_settings.model_copy(update={"IMAP_SERVER": "imap.fastmail.com"})
    criteria = str(ImapMailProvider(other).build_criteria(_query()))

    assert "X-GM-RAW" not in criteria
    assert "UNSEEN" not in criteria


def test_fetch_filters_exact_range_and_limit(imap_settings, monkeypatch) -> None:
    mailbox = FakeMailBox([
        fake_mail("1", datetime(2026, 10, 18, 0, 30)),
        fake_mail("2", datetime(2026, 10, 17, 20)),
        fake_mail("3", datetime(2026, 10, 17, 15)),
        fake_mail("4", datetime(2026, 10, 17, 10)),
    ])
    provider = _provider_with(imap_settings, monkeypatch, mailbox)

    messages = provider.fetch_recent_messages("u1", _query(max_results=2))

    assert [m.message_id for m in messages] == ["2@mail.co.com", "3@mail.co.com"]
    assert mailbox.fetch_kwargs["mark_seen"] is False
    assert mailbox.fetch_kwargs["reverse"] is True
    assert mailbox.logged_out


def test_convert_message_maps_flags_and_html(imap_settings) -> None:
    attachment = SimpleNamespace(filename="notes.pdf", content_type="application/pdf", size=2048, content_id="")
    mail = fake_mail(
        "7",
        datetime(2026, 10, 17, 9),
        text="",
        html=HTML_BODY,
        flags=("\\Flagged",),
        attachments=[attachment],
        headers={"in-reply-to": ("<parent@mail.co.com>",)},
    )

    message = ImapMailProvider(imap_settings)._convert_message(mail)

    assert message.message_id == "7"
    assert message.thread_id == "parent@mail.co.com"
    assert "Release notes" in message.body and "Version 2.0 ships" in message.body
    assert message.html_body == HTML_BODY
    assert message.is_important and message.is_unread
    assert message.sender == "Alice <alice@co.com>"
    assert message.attachments[0].filename == "notes.pdf"
    assert message.attachments[0].attachment_id is None


def test_seen_flag_marks_message_read(imap_settings) -> None:
    mail = fake_mail("8", datetime(2026, 10, 17, 9), flags=("\\Seen",))
    message = ImapMailProvider(imap_settings)._convert_message(mail)
    assert not message.is_unread and not message.is_important


def test_missing_credentials(settings) -> None:
    with pytest.raises(MailAuthError):
        ImapMailProvider(settings).fetch_recent_messages("u1", _query())


def test_custom_credentials_resolver(settings, monkeypatch) -> None:
    seen = []
    provider = ImapMailProvider(settings, credentials=lambda user_id: (f"{user_id}@co.com", "secret"))

    def connect(login, password):
        seen.append(login)
        return FakeMailBox([])

    monkeypatch.setattr(provider, "connect", connect)
    provider.fetch_recent_messages("u9", _query())

    assert seen == ["u9@co.com"]


def test_login_rejected(imap_settings, monkeypatch) -> None:
    provider = ImapMailProvider(imap_settings)

    def reject(login, password):
        raise MailboxLoginError(("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"]), "OK")

    monkeypatch.setattr(provider, "connect", reject)

    with pytest.raises(MailAuthError):
        provider.fetch_recent_messages("u1", _query())


def test_fetch_failure_is_wrapped_and_logs_out(imap_settings, monkeypatch) -> None:
    mailbox = FakeMailBox([], error=MailboxFetchError(("NO", [b"server busy"]), "OK"))
    provider = _provider_with(imap_settings, monkeypatch, mailbox)

    with pytest.raises(FetchError) as excinfo:
        provider.fetch_recent_messages("u1", _query())

    assert not isinstance(excinfo.value, MailAuthError)
    assert mailbox.logged_out


def test_connection_refused(imap_settings, monkeypatch) -> None:
    provider = ImapMailProvider(imap_settings)

    def refuse(login, password):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(provider, "connect", refuse)

    with pytest.raises(FetchError):
        provider.fetch_recent_messages("u1", _query(after=datetime.now() - timedelta(hours=6), before=None))
