import smtplib
from unittest.mock import MagicMock

from tunedesk.config import Settings
from tunedesk.services.email_service import EmailSender, build_notification_email


FILE_ID = '3f2b6c1e-9a4d-4c1b-8f0e-2d5a7b9c1e42'


def _config(**overrides):
    values = dict(
        EMAIL_ENABLED=True,
        SMTP_HOST='smtp.example.com',
        SMTP_USER='mailer',
        SMTP_PASSWORD='secret',
        SMTP_FROM='files@example.com',
        PUBLIC_BASE_URL='https://tunedesk.example.com/',
    )
    values.update(overrides)
    return Settings(**values)


def _message():
    return build_notification_email(
        'FILE_READY',
        to='karim@example.com',
        recipient_name='Karim <B>',
        message='Your file "golf7.bin" is ready for download!',
        file_id=FILE_ID,
        config=_config(),
    )


def test_only_email_worthy_types_build_a_message():
    assert build_notification_email('FILE_STATUS_UPDATE', to='a@b.co', recipient_name='A', message='m') is None
    assert build_notification_email('PRICE_SET', to='', recipient_name='A', message='m') is None


def test_message_links_to_the_file_and_escapes_html():
    message = _message()

    link = f'https://tunedesk.example.com/account/files/{FILE_ID}'
    assert message.subject == 'Your tuned file is ready'
    assert link in message.text_body
    assert link in message.html_body
    assert 'Karim &lt;B&gt;' in message.html_body
    assert 'Download file' in message.html_body


async def test_send_uses_tls_and_login():
    smtp = MagicMock()
    factory = MagicMock()
    factory.return_value.__enter__.return_value = smtp
    sender = EmailSender(_config(), smtp_factory=factory)

    result = await sender.send(_message())

    assert result.ok
    factory.assert_called_once_with('smtp.example.com', 587, timeout=15.0)
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with('mailer', 'secret')
    from_addr, recipients, _ = smtp.sendmail.call_args.args
    assert (from_addr, recipients) == ('files@example.com', ['karim@example.com'])


async def test_send_skips_when_disabled():
    factory = MagicMock()
    sender = EmailSender(_config(EMAIL_ENABLED=False), smtp_factory=factory)

    result = await sender.send(_message())

    assert result.skipped
    factory.assert_not_called()


async def test_smtp_error_is_reported_not_raised():
    factory = MagicMock()
    factory.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPRecipientsRefused({})
    sender = EmailSender(_config(), smtp_factory=factory)

    result = await sender.send(_message())

    assert not result.ok
    assert not result.skipped
