import json
import os
import smtplib
import sys
from unittest.mock import MagicMock

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from portfolio_core.config import Config, GitHubConfig, ProjectsConfig, get_config
from portfolio_core.emailer import ContactForm, DispatchState, NotificationDispatcher
from portfolio_core.handlers import handle_contact_request, handle_projects_request
from portfolio_core.logger_config import mask_secret, redact
from portfolio_core.models import (
    NotificationOutcome,
    NotificationRequest,
    NotificationStatus,
    ProjectRecord,
)
from portfolio_core.summarizer import TRUNCATION_MARKER, summarize_readme, truncate_words


def mail_config(**smtp):
    smtp.setdefault("username", "me@example.com")
    smtp.setdefault("password", "app-password")
    return Config(smtp=smtp, contact={"recipient": "owner@example.com"})


def make_server():
    server = MagicMock()
    server.noop.return_value = (250, b"OK")
    server.send_message.return_value = {}
    return server


def valid_request(**overrides):
    fields = {
        "name": "Bob",
        "email": "bob@example.com",
        "subject": "Hello",
        "message": "Line one\nLine two",
    }
    fields.update(overrides)
    return NotificationRequest(**fields)


class TestConfig:
    def test_default_config(self):
        config = Config()
        assert config.github.base_url == "https://api.github.com"
        assert config.projects.limit == 4
        assert config.projects.fetch_count == 10
        assert config.projects.exclude_forks is True
        assert config.projects.summary_word_budget == 100
        assert config.smtp.host == "smtp.gmail.com"
        assert config.smtp.port == 587

    def test_config_from_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_PORTFOLIO_TOKEN", "yaml-token")
        monkeypatch.delenv("TEST_PORTFOLIO_HANDLE", raising=False)
        config_content = """
github:
  token: "${TEST_PORTFOLIO_TOKEN}"
  timeout: 10
projects:
  handle: "${TEST_PORTFOLIO_HANDLE:-alice}"
  limit: 6
  exclude_forks: false
contact:
  to: "owner@example.com"
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(config_content)

        config = get_config(str(config_file))

        assert config.github.token == "yaml-token"
        assert config.github.timeout == 10
        assert config.projects.handle == "alice"
        assert config.projects.limit == 6
        assert config.projects.exclude_forks is False
        assert config.contact.recipient == "owner@example.com"

    def test_unset_env_falls_back_to_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_PORTFOLIO_HOST", raising=False)
        config_file = tmp_path / "config.yaml"
        config_file.write_text('smtp:\n  host: "${TEST_PORTFOLIO_HOST}"\n')

        config = get_config(str(config_file))
        assert config.smtp.host == "smtp.gmail.com"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = get_config(str(tmp_path / "absent.yaml"))
        assert config.projects.limit == 4

    def test_env_credentials(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "env-token")
        monkeypatch.setenv("EMAIL_USER", "me@example.com")
        monkeypatch.setenv("EMAIL_PASS", "secret")
        monkeypatch.delenv("CONTACT_RECIPIENT", raising=False)

        config = Config()

        assert config.github.token == "env-token"
        assert config.smtp.username == "me@example.com"
        assert config.smtp.password == "secret"
        assert config.contact.recipient == "me@example.com"

    def test_fetch_count_never_below_limit(self):
        assert ProjectsConfig(limit=6, fetch_count=3).fetch_count == 6

    def test_explicit_recipient_kept(self):
        config = Config(smtp={"username": "me@example.com"}, contact={"recipient": "other@example.com"})
        assert config.contact.recipient == "other@example.com"

    def test_token_optional(self, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.delenv("NEXT_PUBLIC_GITHUB_TOKEN", raising=False)
        assert GitHubConfig().token == ""


class TestLogHelpers:
    def test_mask_secret(self):
        assert mask_secret("supersecret") == "sup***"
        assert mask_secret("") == "<unset>"
        assert mask_secret("ab") == "***"

    def test_redact(self):
        text = redact("401 for Authorization: Bearer ghp_abc123 with token=xyz")
        assert "ghp_abc123" not in text
        assert "xyz" not in text


class TestProjectRecord:
    def test_empty_description_rejected(self):
        with pytest.raises(ValueError):
            ProjectRecord(name="x", description="  ", html_url="https://github.com/a/x")


class TestSummarizer:
    def test_strips_markup(self):
        readme = (
            "# My Project\n"
            "\n"
            "A **fast** tool for `parsing` [docs](https://example.com) and _more_.\n"
            "\n"
            "Second paragraph."
        )
        assert summarize_readme(readme) == "A fast tool for parsing docs and more."

    def test_skips_badges_and_html_header(self):
        readme = (
            '<p align="center">\n'
            '  <img src="logo.png" alt="logo">\n'
            "</p>\n"
            "\n"
            "[![Build](https://ci/badge.svg)](https://ci) ![Coverage](https://cov/badge.svg)\n"
            "\n"
            "Actual *description* here.\n"
        )
        assert summarize_readme(readme) == "Actual description here."

    def test_setext_heading_and_code_fence(self):
        readme = "Title\n=====\n\n```bash\npip install thing\n```\n\nUse it ~~daily~~ often."
        assert summarize_readme(readme) == "Use it daily often."

    def test_list_and_quote_markers(self):
        readme = "> Quoted intro\n> continues\n\n- item"
        assert summarize_readme(readme) == "Quoted intro continues"

    def test_inline_html_reduced(self):
        assert summarize_readme("Made with <b>care</b> by me") == "Made with care by me"

    def test_snake_case_preserved(self):
        assert summarize_readme("Set my_var_name in *config*.") == "Set my_var_name in config."

    def test_truncates_to_word_budget(self):
        readme = " ".join(f"word{i}" for i in range(150))
        summary = summarize_readme(readme)

        assert summary.endswith(TRUNCATION_MARKER)
        assert len(summary.split()) == 100
        assert summary.startswith("word0 word1")

    def test_custom_budget(self):
        assert truncate_words("one two three four", 2) == "one two..."
        assert truncate_words("one two", 2) == "one two"

    def test_no_prose(self):
        assert summarize_readme("") is None
        assert summarize_readme(None) is None
        assert summarize_readme("# Only a heading\n\n---\n") is None

    @pytest.mark.parametrize("readme", [
        "# T\n\nA **bold** [link](http://x) with `code`.",
        " ".join(f"w{i}" for i in range(250)),
        '<div align="center"><h1>Logo</h1></div>\n\nPlain text.',
        "Intro line\nsecond line\n\nMore.",
        "`# Title-like code` explains the tool.",
        "`1. step` comes first here.",
        "Use <br> tags and &lt;div&gt; literally.",
        "`[ref]: target` names a link.",
    ])
    def test_idempotent(self, readme):
        once = summarize_readme(readme)
        assert summarize_readme(once) == once

    def test_markup_exposed_by_code_spans_removed(self):
        assert summarize_readme("`# Title-like code` explains the tool.") == "Title-like code explains the tool."
        assert summarize_readme("`1. step` comes first here.") == "step comes first here."

    def test_escaped_tags_do_not_survive(self):
        assert summarize_readme("Use <br> tags and &lt;div&gt; literally.") == "Use tags and literally."

    def test_large_unbalanced_readme_is_capped(self):
        summary = summarize_readme("*x " * 20000)

        assert summary.endswith(TRUNCATION_MARKER)
        assert len(summary.split()) == 100

    def test_markup_heavy_capped_block_marked(self):
        readme = " ".join(f"[![b{i}](https://ci/{i}.svg)](https://ci)" for i in range(150)) + " tail"
        readme = "Lead words. " + readme

        assert summarize_readme(readme, word_budget=10) == "Lead words." + TRUNCATION_MARKER

    def test_deterministic(self):
        readme = "# X\n\nSame *input* always."
        assert summarize_readme(readme) == summarize_readme(readme)


class TestNotificationDispatcher:
    def test_empty_fields_rejected_without_network(self):
        factory = MagicMock()
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=factory)

        outcome = dispatcher.dispatch(NotificationRequest())

        assert outcome.status == NotificationStatus.VALIDATION_ERROR
        assert outcome.message == "All fields are required"
        factory.assert_not_called()
        assert outcome.states == (DispatchState.INIT, DispatchState.VALIDATE_INPUT, DispatchState.FAILED)

    def test_whitespace_only_field_rejected(self):
        factory = MagicMock()
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=factory)

        outcome = dispatcher.dispatch(valid_request(subject="   "))

        assert outcome.status == NotificationStatus.VALIDATION_ERROR
        assert "subject" in outcome.detail
        factory.assert_not_called()

    def test_missing_credentials(self):
        factory = MagicMock()
        config = Config(smtp={"username": "", "password": ""}, contact={"recipient": ""})
        dispatcher = NotificationDispatcher(config, smtp_factory=factory)

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.status == NotificationStatus.CONFIGURATION_ERROR
        assert outcome.retryable is False
        factory.assert_not_called()

    def test_connect_failure_not_retryable(self):
        factory = MagicMock(side_effect=OSError("connection refused"))
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=factory)

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.status == NotificationStatus.TRANSPORT_ERROR
        assert outcome.retryable is False

    def test_verify_failure_not_retryable(self):
        server = make_server()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"Bad credentials")
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server))

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.status == NotificationStatus.TRANSPORT_ERROR
        assert outcome.retryable is False
        assert outcome.message == "Email service configuration error"
        server.send_message.assert_not_called()
        server.quit.assert_called_once()
        assert outcome.states[-2] == DispatchState.VERIFY_TRANSPORT

    def test_send_failure_retryable(self):
        server = make_server()
        server.send_message.side_effect = smtplib.SMTPServerDisconnected("lost")
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server))

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.status == NotificationStatus.TRANSPORT_ERROR
        assert outcome.retryable is True
        assert outcome.message == "Failed to send email. Please try again later."

    def test_refused_recipient_retryable(self):
        server = make_server()
        server.send_message.return_value = {"owner@example.com": (550, b"no")}
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server))

        outcome = dispatcher.dispatch(valid_request())
        assert outcome.retryable is True

    def test_success(self):
        server = make_server()
        factory = MagicMock(return_value=server)
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=factory)

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.status == NotificationStatus.SENT
        assert outcome.message_id
        factory.assert_called_once_with("smtp.gmail.com", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("me@example.com", "app-password")
        server.quit.assert_called_once()
        assert outcome.states == (
            DispatchState.INIT,
            DispatchState.VALIDATE_INPUT,
            DispatchState.VALIDATE_CONFIG,
            DispatchState.OPEN_TRANSPORT,
            DispatchState.VERIFY_TRANSPORT,
            DispatchState.SEND,
            DispatchState.DONE,
        )

    def test_overlapping_submissions_keep_their_own_trail(self):
        server = make_server()
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server))
        nested = []

        def send_during_other_submission(message):
            nested.append(dispatcher.dispatch(NotificationRequest()))
            return {}

        server.send_message.side_effect = send_during_other_submission

        outcome = dispatcher.dispatch(valid_request())

        assert outcome.sent
        assert outcome.states[-2:] == (DispatchState.SEND, DispatchState.DONE)
        assert nested[0].states == (DispatchState.INIT, DispatchState.VALIDATE_INPUT, DispatchState.FAILED)

    def test_ssl_port_skips_starttls(self):
        server = make_server()
        dispatcher = NotificationDispatcher(mail_config(port=465), smtp_factory=MagicMock(return_value=server))

        assert dispatcher.dispatch(valid_request()).sent
        server.starttls.assert_not_called()

    def test_message_content(self):
        dispatcher = NotificationDispatcher(mail_config())
        msg = dispatcher.build_message(valid_request(subject="Hi\nthere", message="<script>x</script>\nBye"))

        assert msg["Subject"] == "New Contact Form Submission: Hi there"
        assert msg["To"] == "owner@example.com"
        assert msg["Reply-To"] == "bob@example.com"
        assert "Portfolio Contact Form" in msg["From"]
        assert msg["Message-ID"]

        text_part, html_part = msg.get_payload()
        html_body = html_part.get_payload(decode=True).decode("utf-8")
        assert "&lt;script&gt;x&lt;/script&gt;<br>Bye" in html_body
        assert "<strong>Name:</strong> Bob" in html_body
        assert "Bye" in text_part.get_payload(decode=True).decode("utf-8")


class TestContactForm:
    def test_success_clears_fields(self):
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=make_server()))
        form = ContactForm(dispatcher)
        form.update(name="Bob", email="bob@example.com", subject="Hi", message="Hello")

        outcome = form.submit()

        assert outcome.sent
        assert form.request == NotificationRequest()

    def test_failure_keeps_fields(self):
        server = make_server()
        server.send_message.side_effect = smtplib.SMTPDataError(451, b"try later")
        form = ContactForm(NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server)))
        form.update(name="Bob", email="bob@example.com", subject="Hi", message="Hello")

        outcome = form.submit()

        assert outcome.retryable is True
        assert form.request.message == "Hello"

    def test_reentry_blocked(self):
        class ReentrantDispatcher:
            inner = "unset"

            def dispatch(self, request):
                self.inner = form.submit()
                return NotificationOutcome.success("<id@example.com>")

        dispatcher = ReentrantDispatcher()
        form = ContactForm(dispatcher)

        assert form.submit().sent
        assert dispatcher.inner is None
        assert form.submitting is False


class TestContactHandler:
    def _dispatcher(self, server=None):
        return NotificationDispatcher(mail_config(), smtp_factory=MagicMock(return_value=server or make_server()))

    def test_method_not_allowed(self):
        status, payload = handle_contact_request("GET", None, dispatcher=self._dispatcher())
        assert status == 405

    def test_success(self):
        body = json.dumps({"name": "Bob", "email": "bob@example.com", "subject": "Hi", "message": "Hello"})
        status, payload = handle_contact_request("POST", body, dispatcher=self._dispatcher())

        assert status == 200
        assert payload == {"message": "Email sent successfully"}

    @pytest.mark.parametrize("body", [
        None,
        "not json",
        json.dumps(["list"]),
        json.dumps({"name": "Bob", "email": "bob@example.com", "subject": "Hi"}),
        {"name": "Bob", "email": 42, "subject": "Hi", "message": "Hello"},
    ])
    def test_bad_request(self, body):
        factory = MagicMock()
        dispatcher = NotificationDispatcher(mail_config(), smtp_factory=factory)

        status, payload = handle_contact_request("POST", body, dispatcher=dispatcher)

        assert status == 400
        assert payload == {"error": "All fields are required"}
        factory.assert_not_called()

    def test_verify_failure_hides_provider_detail(self):
        server = make_server()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"5.7.8 Username and Password not accepted")
        body = {"name": "Bob", "email": "bob@example.com", "subject": "Hi", "message": "Hello"}

        status, payload = handle_contact_request("POST", body, dispatcher=self._dispatcher(server))

        assert status == 500
        assert payload["error"] == "Email service configuration error"
        assert payload["retryable"] is False
        assert "535" not in json.dumps(payload)

    def test_configuration_error(self):
        config = Config(smtp={"username": "", "password": ""}, contact={"recipient": ""})
        body = {"name": "Bob", "email": "bob@example.com", "subject": "Hi", "message": "Hello"}

        status, payload = handle_contact_request("POST", body, config=config)

        assert status == 500
        assert payload["error"] == "Email service is currently unavailable"


class TestProjectsHandler:
    def _config(self):
        return Config(github={"token": ""}, projects={"handle": "alice"})

    def test_success(self):
        repos = [{
            "id": 1,
            "name": "tool",
            "description": "A tool",
            "html_url": "https://github.com/alice/tool",
            "homepage": "https://tool.dev",
            "language": "Go",
            "stargazers_count": 3,
            "topics": ["cli"],
            "fork": False,
            "updated_at": "2024-03-01T00:00:00Z",
        }]

        def handler(request):
            if request.url.path.startswith("/users/"):
                return httpx.Response(200, json=repos)
            return httpx.Response(404)

        status, payload = handle_projects_request(config=self._config(), transport=httpx.MockTransport(handler))

        assert status == 200
        assert payload["status"] == "loaded"
        assert payload["projects"] == [{
            "name": "tool",
            "description": "A tool",
            "html_url": "https://github.com/alice/tool",
            "language": "Go",
            "stars": 3,
            "topics": ["cli"],
            "homepage": "https://tool.dev",
        }]

    @pytest.mark.parametrize("status_code,expected_status,reason", [
        (429, 429, "rate_limited"),
        (401, 503, "unauthorized"),
        (500, 503, "error"),
    ])
    def test_failures(self, status_code, expected_status, reason):
        transport = httpx.MockTransport(lambda request: httpx.Response(status_code))

        status, payload = handle_projects_request(config=self._config(), transport=transport)

        assert status == expected_status
        assert payload["reason"] == reason
        assert payload["error"]

    @pytest.mark.parametrize("limit", [0, -1])
    def test_limit_below_one_is_bad_request(self, limit):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))

        status, payload = handle_projects_request(limit=limit, config=self._config(), transport=transport)

        assert status == 400
        assert payload["reason"] == "invalid_limit"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
