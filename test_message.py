"""
Tests for the email message builder: headers, recipients, sticky errors,
attachments, MIME structure, priority and date handling.
"""

import base64
from datetime import datetime, timezone
from email import message_from_bytes

import pytest

from mail_message import (
    MAILER_NAME,
    TEXT_CALENDAR,
    TEXT_HTML,
    TEXT_PLAIN,
    Attachment,
    Priority,
    detect_mime_type,
    new_message,
    validate_filename,
)
from smtp import AttachmentReadError, BuildError, ValidationError

HTML_BODY = '<html><body><p>Hello <b>Gophers</b>!</p><img src="cid:logo.png"></body></html>'
PNG_BYTES = b'\x89PNG\r\n\x1a\n' + b'\x00' * 16


def base_email():
    email = new_message()
    email.set_from('From Example <from.email@example.com>')
    email.add_to('xhit@example.com').set_subject('New Go Email')
    email.set_body(TEXT_HTML, HTML_BODY)
    return email


def parse(email):
    return message_from_bytes(email.build().data)


def test_headers_and_envelope():
    email = base_email()
    email.add_cc('otherto@example.com').add_bcc('hidden@example.com')
    email.set_reply_to('Reply <reply@example.com>')

    wire = email.build()
    message = message_from_bytes(wire.data)

    assert message['From'] == 'From Example <from.email@example.com>'
    assert message['To'] == 'xhit@example.com'
    assert message['Cc'] == 'otherto@example.com'
    assert message['Reply-To'] == 'Reply <reply@example.com>'
    assert message['Subject'] == 'New Go Email'
    assert message['Message-ID'] == wire.message_id
    assert message['X-Mailer'] == MAILER_NAME
    assert message['Date']
    assert message['MIME-Version'] == '1.0'

    assert 'Bcc' not in message
    assert b'hidden@example.com' not in wire.data
    assert wire.recipients == ('xhit@example.com', 'otherto@example.com', 'hidden@example.com')
    assert wire.envelope_from == 'from.email@example.com'


def test_payload_uses_crlf_line_endings():
    data = base_email().build().data

    assert data.count(b'\n') == data.count(b'\r\n')


def test_html_body_round_trips_through_quoted_printable():
    message = parse(base_email())

    assert message.get_content_type() == 'text/html'
    assert message['Content-Transfer-Encoding'] == 'quoted-printable'
    assert message.get_payload(decode=True).decode('utf-8') == HTML_BODY


def test_each_build_gets_a_fresh_message_id():
    email = base_email()

    assert email.build().message_id != email.build().message_id


def test_sticky_error_turns_later_calls_into_noops():
    email = new_message()
    email.set_from('not an address')
    first_error = email.get_error()

    email.add_to('valid@example.com').set_subject('line\r\nbreak').set_priority('urgent')

    assert isinstance(first_error, ValidationError)
    assert email.get_error() is first_error
    assert email.get_error() is first_error
    assert email.get_recipients() == []
    assert email.subject == ''


def test_build_of_poisoned_message_chains_first_error():
    email = base_email().add_cc('bad@@example.com')
    error = email.get_error()

    with pytest.raises(BuildError) as exc_info:
        email.build()

    assert exc_info.value.__cause__ is error
    assert email.get_error() is error


def test_build_without_recipients_fails():
    email = new_message().set_from('from@example.com').set_subject('Nobody')

    with pytest.raises(BuildError):
        email.build()
    assert email.get_error() is None


def test_build_without_sender_fails():
    email = new_message().add_to('to@example.com')

    with pytest.raises(BuildError):
        email.build()


@pytest.mark.parametrize('method, value', [
    ('set_subject', 'Hello\nBcc: victim@example.com'),
    ('set_from', 'a@example.com\r\nX-Injected: yes'),
    ('set_reply_to', ''),
    ('set_body', None),
])
def test_invalid_values_are_recorded(method, value):
    email = new_message()
    if method == 'set_body':
        email.set_body(TEXT_PLAIN, value)
    else:
        getattr(email, method)(value)

    assert isinstance(email.get_error(), ValidationError)


def test_unsupported_body_content_type():
    email = new_message().set_body('application/json', '{}')

    assert isinstance(email.get_error(), ValidationError)


def test_recipients_are_deduplicated_case_insensitively():
    email = new_message().set_from('from@example.com')
    email.add_to('a@example.com', 'A@Example.com', 'b@example.com').add_cc('a@example.com')

    assert email.get_recipients() == ['a@example.com', 'b@example.com']
    assert parse(email)['To'] == 'a@example.com, b@example.com'


def test_add_to_requires_an_address():
    email = new_message().add_to()

    assert isinstance(email.get_error(), ValidationError)


def test_envelope_sender_precedence():
    email = base_email()
    assert email.get_envelope_sender() == 'from.email@example.com'

    email.set_sender('Sender <sender@example.com>')
    assert email.get_envelope_sender() == 'sender@example.com'

    email.set_return_path('bounce@example.com')
    assert email.get_envelope_sender() == 'bounce@example.com'

    message = parse(email)
    assert message['Sender'] == 'Sender <sender@example.com>'
    assert message['Return-Path'] == '<bounce@example.com>'


def test_base64_attachment_decodes_to_original_bytes():
    email = base_email().attach(Attachment.from_base64('Zm9v', 'filename'))
    message = parse(email)

    assert message.get_content_type() == 'multipart/mixed'
    parts = [part for part in message.walk() if part.get_filename() == 'filename']
    assert len(parts) == 1
    assert parts[0].get_content_type() == 'application/octet-stream'
    assert parts[0].get_content_disposition() == 'attachment'
    assert parts[0].get_payload(decode=True) == b'foo'


@pytest.mark.parametrize('newline', ['\n', '\r\n'])
def test_line_wrapped_base64_attachment(newline):
    content = bytes(range(256)) * 2
    wrapped = base64.encodebytes(content).decode('ascii').replace('\n', newline)

    email = base_email().attach(Attachment.from_base64(wrapped, 'file.bin'))

    assert email.get_error() is None
    parts = [part for part in parse(email).walk() if part.get_filename() == 'file.bin']
    assert parts[0].get_payload(decode=True) == content


def test_invalid_base64_attachment():
    email = base_email().attach(Attachment.from_base64('not base64!!', 'broken.bin'))

    assert isinstance(email.get_error(), AttachmentReadError)


def test_file_attachment(tmp_path):
    report = tmp_path / 'report.txt'
    report.write_bytes(b'quarterly numbers\n')

    email = base_email().attach(Attachment.from_file(str(report)))
    assert email.get_error() is None

    parts = [part for part in parse(email).walk() if part.get_filename() == 'report.txt']
    assert parts[0].get_content_type() == 'text/plain'
    assert parts[0].get_payload(decode=True) == b'quarterly numbers\n'


def test_file_attachment_with_explicit_name(tmp_path):
    source = tmp_path / 'data.bin'
    source.write_bytes(PNG_BYTES)

    email = base_email().attach(Attachment.from_file(str(source), name='chart.png'))

    parts = [part for part in parse(email).walk() if part.get_filename() == 'chart.png']
    assert parts[0].get_content_type() == 'image/png'


def test_file_attachment_from_path_object(tmp_path):
    report = tmp_path / 'report.csv'
    report.write_bytes(b'a,b\n1,2\n')

    email = base_email().attach(Attachment.from_file(report))

    assert email.get_error() is None
    parts = [part for part in parse(email).walk() if part.get_filename() == 'report.csv']
    assert parts[0].get_payload(decode=True) == b'a,b\n1,2\n'


def test_unreadable_file_attachment(tmp_path):
    email = base_email().attach(Attachment.from_file(str(tmp_path / 'missing.pdf')))

    assert isinstance(email.get_error(), AttachmentReadError)
    with pytest.raises(BuildError):
        email.build()


@pytest.mark.parametrize('attachment', [
    Attachment.from_bytes(b'x', '../etc/passwd'),
    Attachment.from_bytes(b'x', 'bad"name.txt'),
    Attachment(file_path='a.txt', b64_data='Zm9v'),
    Attachment(name='empty.txt'),
    Attachment(file_path=123),
    Attachment(b64_data=['Zm9v'], name='list.bin'),
    'plain string',
])
def test_invalid_attachment_descriptions(attachment):
    email = base_email().attach(attachment)

    assert isinstance(email.get_error(), ValidationError)


def test_inline_attachment_is_related_with_content_id():
    email = base_email().attach(Attachment.from_bytes(PNG_BYTES, 'logo.png', inline=True))
    message = parse(email)

    assert message.get_content_type() == 'multipart/related'
    body, image = message.get_payload()
    assert body.get_content_type() == 'text/html'
    assert image.get_content_type() == 'image/png'
    assert image['Content-ID'] == '<logo.png>'
    assert image.get_content_disposition() == 'inline'
    assert image.get_payload(decode=True) == PNG_BYTES


def test_full_mime_tree():
    email = base_email().add_alternative(TEXT_PLAIN, 'Hello Gophers!')
    email.attach(Attachment.from_bytes(PNG_BYTES, 'logo.png', inline=True))
    email.attach(Attachment.from_base64('Zm9v', 'filename'))
    message = parse(email)

    assert message.get_content_type() == 'multipart/mixed'
    related, attachment = message.get_payload()
    assert related.get_content_type() == 'multipart/related'
    assert attachment.get_filename() == 'filename'

    alternative, image = related.get_payload()
    assert alternative.get_content_type() == 'multipart/alternative'
    assert image['Content-ID'] == '<logo.png>'
    assert [part.get_content_type() for part in alternative.get_payload()] == ['text/plain', 'text/html']


def test_alternative_keeps_plain_text_first():
    email = base_email().add_alternative(TEXT_CALENDAR, 'BEGIN:VCALENDAR\nEND:VCALENDAR')
    email.add_alternative(TEXT_PLAIN, 'Plain version')
    message = parse(email)

    assert message.get_content_type() == 'multipart/alternative'
    assert [part.get_content_type() for part in message.get_payload()] == [
        'text/plain', 'text/html', 'text/calendar',
    ]


def test_plain_message_is_single_part():
    email = new_message().set_from('from@example.com').add_to('to@example.com')
    email.set_subject('Plain').set_body(TEXT_PLAIN, 'Just text')
    message = parse(email)

    assert not message.is_multipart()
    assert message.get_content_type() == 'text/plain'
    assert message.get_content_charset() == 'utf-8'


@pytest.mark.parametrize('priority, expected', [
    (Priority.HIGH, {'X-Priority': '1 (Highest)', 'X-MSMail-Priority': 'High', 'Importance': 'High'}),
    ('low', {'X-Priority': '5 (Lowest)', 'X-MSMail-Priority': 'Low', 'Importance': 'Low'}),
])
def test_priority_headers(priority, expected):
    message = parse(base_email().set_priority(priority))

    for name, value in expected.items():
        assert message[name] == value


def test_normal_priority_adds_no_headers():
    message = parse(base_email().set_priority(Priority.NORMAL))

    assert 'X-Priority' not in message
    assert 'Importance' not in message


def test_set_date_with_zone_abbreviation():
    message = parse(base_email().set_date('2015-04-28 10:32:00 CDT'))

    assert message['Date'] == 'Tue, 28 Apr 2015 10:32:00 -0500'


def test_set_date_with_numeric_offset():
    message = parse(base_email().set_date('2015-04-28 10:32:00 +0200'))

    assert message['Date'] == 'Tue, 28 Apr 2015 10:32:00 +0200'


def test_set_date_with_datetime():
    email = base_email().set_date(datetime(2015, 4, 28, 10, 32, tzinfo=timezone.utc))

    assert parse(email)['Date'] == 'Tue, 28 Apr 2015 10:32:00 +0000'


@pytest.mark.parametrize('value', ['28/04/2015', '2015-04-28 10:32:00 XYZ', '2015-13-28 10:32:00', 20150428])
def test_invalid_dates(value):
    email = base_email().set_date(value)

    assert isinstance(email.get_error(), ValidationError)


def test_custom_headers():
    email = base_email().add_header('X-Campaign', 'spring-launch')

    assert parse(email)['X-Campaign'] == 'spring-launch'


@pytest.mark.parametrize('name', ['Subject', 'bcc', 'Content-Type', 'Bad Header:'])
def test_reserved_or_malformed_header_names_are_rejected(name):
    email = base_email().add_header(name, 'value')

    assert isinstance(email.get_error(), ValidationError)


def test_charset():
    email = base_email().set_charset('iso-8859-1')

    assert email.get_error() is None
    assert parse(email).get_content_charset() == 'iso-8859-1'

    assert isinstance(base_email().set_charset('no-such-charset').get_error(), ValidationError)


def test_body_must_fit_the_charset():
    email = base_email().set_charset('iso-8859-1').set_body(TEXT_PLAIN, 'Price: 5 \u20ac')

    assert isinstance(email.get_error(), ValidationError)
    with pytest.raises(BuildError):
        email.build()


def test_alternative_must_fit_the_charset():
    email = base_email().set_charset('us-ascii').add_alternative(TEXT_PLAIN, 'Caf\u00e9')

    assert isinstance(email.get_error(), ValidationError)


def test_charset_change_checks_existing_bodies():
    email = base_email().add_alternative(TEXT_PLAIN, 'Price: 5 \u20ac')
    email.set_charset('iso-8859-1')

    assert isinstance(email.get_error(), ValidationError)
    assert email.charset == 'utf-8'


def test_non_ascii_body_in_utf8():
    email = base_email().set_body(TEXT_PLAIN, 'Price: 5 \u20ac')

    assert parse(email).get_payload(decode=True).decode('utf-8') == 'Price: 5 \u20ac'


def test_unencodable_body_fails_build_with_build_error():
    email = base_email().set_body(TEXT_PLAIN, 'Caf\u00e9')
    email.charset = 'us-ascii'

    with pytest.raises(BuildError) as exc_info:
        email.build()

    assert isinstance(exc_info.value.__cause__, UnicodeError)


def test_get_message_returns_text():
    text = base_email().get_message()

    assert 'Subject: New Go Email' in text
    assert 'From: From Example <from.email@example.com>' in text


def test_get_from():
    assert new_message().get_from() is None
    assert base_email().get_from() == 'From Example <from.email@example.com>'


def test_detect_mime_type():
    assert detect_mime_type('photo.jpg') == 'image/jpeg'
    assert detect_mime_type('blob', PNG_BYTES) == 'image/png'
    assert detect_mime_type('blob', b'%PDF-1.7') == 'application/pdf'
    assert detect_mime_type('blob') == 'application/octet-stream'


def test_validate_filename():
    assert validate_filename('report.pdf')
    assert not validate_filename('')
    assert not validate_filename('dir/report.pdf')
    assert not validate_filename('..')
    assert not validate_filename('a' * 256)
