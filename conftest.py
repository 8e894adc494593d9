"""
Shared fixtures: an in-process SMTP server speaking enough of RFC 5321 for
end-to-end client tests (EHLO, AUTH PLAIN/LOGIN/CRAM-MD5, MAIL, RCPT,
DATA, RSET, NOOP, QUIT).
"""

import base64
import hmac
import re
import socketserver
import threading
from dataclasses import dataclass, field
from typing import Dict, List

import pytest

CRAM_CHALLENGE = b'<1896.697170952@mini-smtp>'

_PATH_REGEX = re.compile(r'<([^>]*)>')


@dataclass
class Envelope:
    mail_from: str
    rcpt_to: List[str]
    data: bytes


@dataclass
class ServerLog:
    connections: int = 0
    commands: List[str] = field(default_factory=list)
    envelopes: List[Envelope] = field(default_factory=list)
    authenticated: List[str] = field(default_factory=list)


class MiniSMTPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, users: Dict[str, str] = None, rejected=(), idle_timeout=None):
        super().__init__(server_address, MiniSMTPHandler)
        self.users = users or {}
        self.idle_timeout = idle_timeout
        self.rejected = set(rejected)
        self.log = ServerLog()
        self.lock = threading.Lock()

    @property
    def port(self) -> int:
        return self.server_address[1]


class MiniSMTPHandler(socketserver.StreamRequestHandler):
    def setup(self) -> None:
        # Clients silent for longer than idle_timeout are dropped
        self.timeout = self.server.idle_timeout
        super().setup()

    def reply(self, *lines: str) -> None:
        for line in lines:
            self.wfile.write(line.encode('ascii') + b'\r\n')
        self.wfile.flush()

    def read_line(self) -> str:
        return self.rfile.readline().decode('ascii', errors='replace').rstrip('\r\n')

    def handle(self) -> None:
        server = self.server
        with server.lock:
            server.log.connections += 1

        self.reply('220 mini-smtp ESMTP ready')
        mail_from, rcpt_to = None, []

        while True:
            try:
                line = self.rfile.readline()
            except OSError:
                return
            if not line:
                return
            command = line.decode('ascii', errors='replace').rstrip('\r\n')
            verb, _, arg = command.partition(' ')
            verb = verb.upper()
            with server.lock:
                server.log.commands.append(verb)

            if verb == 'EHLO':
                self.reply('250-mini-smtp', '250-AUTH PLAIN LOGIN CRAM-MD5', '250-SIZE 10485760', '250 8BITMIME')
            elif verb == 'HELO':
                self.reply('250 mini-smtp')
            elif verb == 'AUTH':
                self.authenticate(arg)
            elif verb == 'MAIL':
                match = _PATH_REGEX.search(arg)
                mail_from, rcpt_to = (match.group(1) if match else ''), []
                self.reply('250 OK')
            elif verb == 'RCPT':
                match = _PATH_REGEX.search(arg)
                address = match.group(1) if match else ''
                if address in server.rejected:
                    self.reply('550 5.1.1 mailbox unavailable')
                else:
                    rcpt_to.append(address)
                    self.reply('250 OK')
            elif verb == 'DATA':
                self.reply('354 End data with <CR><LF>.<CR><LF>')
                chunks = []
                while True:
                    chunk = self.rfile.readline()
                    if chunk in (b'.\r\n', b'.\n', b''):
                        break
                    if chunk.startswith(b'..'):
                        chunk = chunk[1:]
                    chunks.append(chunk)
                with server.lock:
                    server.log.envelopes.append(Envelope(mail_from, list(rcpt_to), b''.join(chunks)))
                mail_from, rcpt_to = None, []
                self.reply('250 2.0.0 queued')
            elif verb == 'RSET':
                mail_from, rcpt_to = None, []
                self.reply('250 OK')
            elif verb == 'NOOP':
                self.reply('250 OK')
            elif verb == 'QUIT':
                self.reply('221 bye')
                return
            else:
                self.reply('502 command not implemented')

    def authenticate(self, arg: str) -> None:
        mechanism, _, initial = arg.partition(' ')
        mechanism = mechanism.upper()
        users = self.server.users

        if mechanism == 'PLAIN':
            if not initial:
                self.reply('334 ')
                initial = self.read_line()
            _, username, password = base64.b64decode(initial).decode('utf-8').split('\0')
            ok = users.get(username) == password
        elif mechanism == 'LOGIN':
            if initial:
                username = base64.b64decode(initial).decode('utf-8')
            else:
                self.reply('334 ' + base64.b64encode(b'Username:').decode('ascii'))
                username = base64.b64decode(self.read_line()).decode('utf-8')
            self.reply('334 ' + base64.b64encode(b'Password:').decode('ascii'))
            password = base64.b64decode(self.read_line()).decode('utf-8')
            ok = users.get(username) == password
        elif mechanism == 'CRAM-MD5':
            self.reply('334 ' + base64.b64encode(CRAM_CHALLENGE).decode('ascii'))
            username, _, digest = base64.b64decode(self.read_line()).decode('utf-8').rpartition(' ')
            secret = users.get(username)
            ok = secret is not None and hmac.compare_digest(
                digest, hmac.new(secret.encode('utf-8'), CRAM_CHALLENGE, 'md5').hexdigest()
            )
        else:
            self.reply('504 5.5.4 mechanism not supported')
            return

        if ok:
            with self.server.lock:
                self.server.log.authenticated.append(f"{mechanism}:{username}")
            self.reply('235 2.7.0 Authentication successful')
        else:
            self.reply('535 5.7.8 Authentication credentials invalid')


def _start_server(**kwargs) -> MiniSMTPServer:
    server = MiniSMTPServer(('127.0.0.1', 0), **kwargs)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture
def smtp_server():
    server = _start_server(users={'test@example.com': 'santiago'}, rejected={'blocked@example.com'})
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def idle_smtp_server():
    server = _start_server(idle_timeout=0.3)
    yield server
    server.shutdown()
    server.server_close()
