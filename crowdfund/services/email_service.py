"""Outbound mail.

Messages are queued and delivered by a background worker so that a slow or
failing SMTP server never affects the request that triggered the mail. Each
task is tried up to ``max_attempts`` times; tasks that still fail land in
``dead_letters`` and are logged.
"""
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from threading import Event, Lock, Thread
import logging
import queue
import smtplib
import time

from markupsafe import escape

logger = logging.getLogger(__name__)


class EmailTask:

    def __init__(self, to_email, subject, body, kind='generic'):
        self.to_email = to_email
        self.subject = subject
        self.body = body
        self.kind = kind
        self.attempts = 0
        self.last_error = None

    def __repr__(self):
        return f'<EmailTask {self.kind} to={self.to_email}>'


class SMTPTransport:

    def __init__(self, host, port, user, password, sender):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user

    def send(self, to_email, subject, body):
        msg = MIMEMultipart()
        msg['From'] = self.sender
        msg['To'] = to_email
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'html', 'utf-8'))

        with smtplib.SMTP_SSL(self.host, self.port, timeout=10) as server:
            server.login(self.user, self.password)
            server.sendmail(self.sender, [to_email], msg.as_string())


class LogTransport:
    """Used when EMAIL_ENABLED is off: writes the message to the log."""

    def send(self, to_email, subject, body):
        logger.info("EMAIL (not sent) to=%s subject=%s", to_email, subject)


class EmailQueue:

    def __init__(self, transport, max_attempts=3, retry_delay=2.0,
                 run_async=True):
        self.transport = transport
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.run_async = run_async
        self.dead_letters = []
        self._queue = queue.Queue()
        self._stop = Event()
        self._lock = Lock()
        self._worker = None

    def start(self):
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stop.clear()
            self._worker = Thread(
                target=self._run, name='email-worker', daemon=True)
            self._worker.start()
        logger.info("Email worker started")

    def stop(self, timeout=5):
        self._stop.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        logger.info("Email worker stopped")

    def enqueue(self, task: EmailTask):
        if not self.run_async:
            self._deliver(task)
            return
        if self._worker is None or not self._worker.is_alive():
            self.start()
        self._queue.put(task)

    def wait(self):
        """Block until the worker has handled every queued task."""
        self._queue.join()

    def _run(self):
        while not self._stop.is_set():
            try:
                task = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self._deliver(task)
            finally:
                self._queue.task_done()

    def _deliver(self, task: EmailTask):
        while task.attempts < self.max_attempts:
            task.attempts += 1
            try:
                self.transport.send(task.to_email, task.subject, task.body)
                logger.info(
                    "Email %s sent to %s (attempt %s)",
                    task.kind, task.to_email, task.attempts)
                return True
            except Exception as e:
                task.last_error = str(e)
                logger.warning(
                    "Email %s to %s failed (attempt %s/%s): %s",
                    task.kind, task.to_email, task.attempts,
                    self.max_attempts, e,
                    exc_info=not isinstance(
                        e, (smtplib.SMTPException, OSError)))
                if task.attempts < self.max_attempts and self.retry_delay:
                    time.sleep(self.retry_delay)
        self.dead_letters.append(task)
        logger.error(
            "Email %s to %s moved to dead letters after %s attempts: %s",
            task.kind, task.to_email, task.attempts, task.last_error)
        return False


class EmailService:

    def __init__(self, email_queue, token_service, frontend_url):
        self.queue = email_queue
        self.tokens = token_service
        self.frontend_url = frontend_url.rstrip('/')

    @classmethod
    def from_config(cls, config, token_service):
        if config.get('EMAIL_ENABLED'):
            transport = SMTPTransport(
                config['SMTP_HOST'],
                config['SMTP_PORT'],
                config['SMTP_USER'],
                config['SMTP_PASSWORD'],
                config.get('SMTP_SENDER'),
            )
        else:
            transport = LogTransport()
        email_queue = EmailQueue(
            transport,
            max_attempts=config.get('EMAIL_MAX_ATTEMPTS', 3),
            retry_delay=config.get('EMAIL_RETRY_DELAY_SECONDS', 2),
            run_async=config.get('EMAIL_ASYNC', True),
        )
        return cls(email_queue, token_service, config['FRONTEND_URL'])

    def send_verification(self, email, username):
        token = self.tokens.issue_purpose_token(email, 'verify_email')
        link = f'{self.frontend_url}/verify-email?token={token}'
        body = f"""
        <p>Hi {escape(username)},</p>
        <p>Please confirm your email address by opening the link below.
        The link is valid for 24 hours.</p>
        <p><a href="{link}">{link}</a></p>
        """
        self.queue.enqueue(EmailTask(
            email, 'Verify your email address', body, kind='verification'))

    def send_password_reset(self, email):
        token = self.tokens.issue_purpose_token(
            email, 'reset_password', ttl_hours=1)
        link = f'{self.frontend_url}/reset-password?token={token}'
        body = f"""
        <p>We received a request to reset your password.</p>
        <p>Open the link below within one hour to choose a new one.
        If you did not ask for this, ignore this message.</p>
        <p><a href="{link}">{link}</a></p>
        """
        self.queue.enqueue(EmailTask(
            email, 'Reset your password', body, kind='password_reset'))
