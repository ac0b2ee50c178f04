import html
import logging
import smtplib
import threading
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from enum import Enum
from typing import Callable, Dict, List, Optional

from portfolio_core.config import Config
from portfolio_core.logger_config import mask_secret, redact
from portfolio_core.models import NotificationOutcome, NotificationRequest, NotificationStatus

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    INIT = "init"
    VALIDATE_INPUT = "validate_input"
    VALIDATE_CONFIG = "validate_config"
    OPEN_TRANSPORT = "open_transport"
    VERIFY_TRANSPORT = "verify_transport"
    SEND = "send"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    DispatchState.INIT: DispatchState.VALIDATE_INPUT,
    DispatchState.VALIDATE_INPUT: DispatchState.VALIDATE_CONFIG,
    DispatchState.VALIDATE_CONFIG: DispatchState.OPEN_TRANSPORT,
    DispatchState.OPEN_TRANSPORT: DispatchState.VERIFY_TRANSPORT,
    DispatchState.VERIFY_TRANSPORT: DispatchState.SEND,
    DispatchState.SEND: DispatchState.DONE,
}

TERMINAL_STATES = frozenset({DispatchState.DONE, DispatchState.FAILED})


def _one_line(value: str) -> str:
    return " ".join(value.split())


class _Dispatch:
    """Per-submission working state passed between steps."""

    def __init__(self, request: NotificationRequest):
        self.request = request
        self.server: Optional[smtplib.SMTP] = None
        self.message_id: Optional[str] = None
        self.history: List[DispatchState] = [DispatchState.INIT]


class NotificationDispatcher:
    """Sends one contact form submission through the configured SMTP relay.

    Each call to ``dispatch`` walks INIT -> VALIDATE_INPUT -> VALIDATE_CONFIG
    -> OPEN_TRANSPORT -> VERIFY_TRANSPORT -> SEND -> DONE and stops at the
    first step that produces an outcome. Failures before SEND are not
    retryable; a failed SEND is.
    """

    def __init__(self, config: Optional[Config] = None, smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None):
        self.config = config or Config()
        self.smtp_config = self.config.smtp
        self.contact_config = self.config.contact
        self._smtp_factory = smtp_factory
        self._steps: Dict[DispatchState, Callable[[_Dispatch], Optional[NotificationOutcome]]] = {
            DispatchState.INIT: lambda _: None,
            DispatchState.VALIDATE_INPUT: self._validate_input,
            DispatchState.VALIDATE_CONFIG: self._validate_config,
            DispatchState.OPEN_TRANSPORT: self._open_transport,
            DispatchState.VERIFY_TRANSPORT: self._verify_transport,
            DispatchState.SEND: self._send,
        }

    def dispatch(self, request: NotificationRequest) -> NotificationOutcome:
        state = DispatchState.INIT
        context = _Dispatch(request)
        outcome: Optional[NotificationOutcome] = None

        try:
            while state not in TERMINAL_STATES:
                outcome = self._steps[state](context)
                state = DispatchState.FAILED if outcome is not None else _TRANSITIONS[state]
                context.history.append(state)
        finally:
            self._close(context)

        if outcome is None:
            outcome = NotificationOutcome.success(context.message_id)
            logger.info(f"Contact message {context.message_id} sent to {self.contact_config.recipient}")
        elif outcome.detail:
            log = logger.warning if outcome.status == NotificationStatus.VALIDATION_ERROR else logger.error
            log(f"Contact submission failed at {context.history[-2].value}: {outcome.detail}")
        return outcome.model_copy(update={"states": tuple(s.value for s in context.history)})

    def _validate_input(self, context: _Dispatch) -> Optional[NotificationOutcome]:
        missing = context.request.missing_fields()
        if missing:
            return NotificationOutcome.validation_error(f"Missing fields: {', '.join(missing)}")
        return None

    def _validate_config(self, context: _Dispatch) -> Optional[NotificationOutcome]:
        missing = []
        if not self.smtp_config.username:
            missing.append("smtp.username (EMAIL_USER)")
        if not self.smtp_config.password:
            missing.append("smtp.password (EMAIL_PASS)")
        if not self.contact_config.recipient:
            missing.append("contact.recipient (CONTACT_RECIPIENT)")
        if missing:
            return NotificationOutcome.configuration_error(f"Email credentials not configured: {', '.join(missing)}")
        return None

    def _use_ssl(self) -> bool:
        return self.smtp_config.use_ssl or self.smtp_config.port == 465

    def _open_transport(self, context: _Dispatch) -> Optional[NotificationOutcome]:
        smtp_config = self.smtp_config
        factory = self._smtp_factory or (smtplib.SMTP_SSL if self._use_ssl() else smtplib.SMTP)

        logger.info(f"Connecting to SMTP server: {smtp_config.host}:{smtp_config.port}")
        try:
            context.server = factory(smtp_config.host, smtp_config.port, timeout=smtp_config.timeout)
        except (smtplib.SMTPException, OSError) as e:
            return NotificationOutcome.transport_error(
                retryable=False,
                detail=f"Could not connect to {smtp_config.host}:{smtp_config.port}: {redact(str(e))}",
            )
        return None

    def _verify_transport(self, context: _Dispatch) -> Optional[NotificationOutcome]:
        smtp_config = self.smtp_config
        server = context.server
        logger.info(f"Verifying SMTP session as {mask_secret(smtp_config.username)}")
        try:
            server.ehlo()
            if smtp_config.use_tls and not self._use_ssl():
                server.starttls()
                server.ehlo()
            server.login(smtp_config.username, smtp_config.password)
            code, _ = server.noop()
            if code != 250:
                raise smtplib.SMTPResponseException(code, b"NOOP rejected")
        except (smtplib.SMTPException, OSError) as e:
            return NotificationOutcome.transport_error(
                retryable=False,
                detail=f"SMTP verification failed: {type(e).__name__}: {redact(str(e))}",
            )
        return None

    def _send(self, context: _Dispatch) -> Optional[NotificationOutcome]:
        msg = self.build_message(context.request)
        try:
            refused = context.server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            return NotificationOutcome.transport_error(
                retryable=True,
                detail=f"Error sending email: {type(e).__name__}: {redact(str(e))}",
            )
        if refused:
            return NotificationOutcome.transport_error(
                retryable=True,
                detail=f"Recipients refused: {', '.join(refused)}",
            )
        context.message_id = msg["Message-ID"]
        return None

    def _close(self, context: _Dispatch) -> None:
        if context.server is None:
            return
        try:
            context.server.quit()
        except (smtplib.SMTPException, OSError):
            context.server.close()
        context.server = None

    def build_message(self, request: NotificationRequest) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        # header values must stay on one line
        msg["Subject"] = f"{self.contact_config.subject_prefix}{_one_line(request.subject)}"
        msg["From"] = formataddr((self.contact_config.sender_name, self.smtp_config.username))
        msg["To"] = self.contact_config.recipient
        msg["Reply-To"] = _one_line(request.email)
        sender_domain = self.smtp_config.username.rpartition("@")[2] or None
        msg["Message-ID"] = make_msgid(domain=sender_domain)

        msg.attach(MIMEText(self._render_text(request), "plain", _charset="utf-8"))
        msg.attach(MIMEText(self._render_html(request), "html", _charset="utf-8"))
        return msg

    @staticmethod
    def _render_text(request: NotificationRequest) -> str:
        return "\n".join([
            "New Contact Form Submission",
            "",
            f"Name: {request.name}",
            f"Email: {request.email}",
            f"Subject: {request.subject}",
            "",
            "Message:",
            request.message,
        ])

    @staticmethod
    def _render_html(request: NotificationRequest) -> str:
        name = html.escape(request.name)
        email = html.escape(request.email)
        subject = html.escape(request.subject)
        message = html.escape(request.message).replace("\r\n", "\n").replace("\n", "<br>")

        return f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #2563eb;">New Contact Form Submission</h2>
            <div style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; margin-top: 20px;">
                <p><strong>Name:</strong> {name}</p>
                <p><strong>Email:</strong> {email}</p>
                <p><strong>Subject:</strong> {subject}</p>
                <p><strong>Message:</strong></p>
                <div style="background-color: white; padding: 15px; border-radius: 4px; margin-top: 10px;">
                    {message}
                </div>
            </div>
            <p style="margin-top: 20px; color: #6b7280; font-size: 14px;">
                This message was sent from your portfolio contact form.
            </p>
        </div>
        """


class ContactForm:
    """Form state for one contact form instance.

    Only one submission may be in flight at a time. Fields are cleared after
    a successful send and kept after a failure so they can be corrected.
    """

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher
        self.request = NotificationRequest()
        self.last_outcome: Optional[NotificationOutcome] = None
        self._lock = threading.Lock()

    @property
    def submitting(self) -> bool:
        return self._lock.locked()

    def update(self, **fields: str) -> None:
        self.request = self.request.model_copy(update=fields)

    def submit(self) -> Optional[NotificationOutcome]:
        if not self._lock.acquire(blocking=False):
            logger.warning("Submission already in progress, ignoring")
            return None

        try:
            outcome = self.dispatcher.dispatch(self.request)
            self.last_outcome = outcome
            if outcome.sent:
                self.request = NotificationRequest()
            return outcome
        finally:
            self._lock.release()
